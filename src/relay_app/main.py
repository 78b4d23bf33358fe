import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import colorlog
from dotenv import load_dotenv
from rich.console import Console

from relay_library import __version__
from relay_library.utils.paths import get_data_file, get_default_root, get_logs_dir

from .config_exceptions import ConfigLoadError, ConfigValidationError
from .settings import RelaySettings, load_settings


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Qwen OAuth Relay Server")
    parser.add_argument("--host", type=str, default=None, help="Host to bind the server to.")
    parser.add_argument("--port", type=int, default=None, help="Port to run the server on.")
    parser.add_argument(
        "--enable-request-logging", action="store_true", help="Enable request logging."
    )
    return parser.parse_args(argv)


# Create a filter to ensure the debug handler ONLY gets DEBUG messages from the relay_library
class RelayDebugFilter(logging.Filter):
    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith("relay_library")


def configure_logging(log_dir: Path) -> None:
    # Configure a console handler with color (INFO and above only, no DEBUG)
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    file_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Configure a file handler for INFO-level logs and higher
    info_file_handler = logging.FileHandler(log_dir / "relay.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(file_formatter)

    # Configure a dedicated file handler for all DEBUG-level logs
    debug_file_handler = logging.FileHandler(log_dir / "relay_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(file_formatter)
    debug_file_handler.addFilter(RelayDebugFilter())

    # Get the root logger and set it to DEBUG to capture all messages
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_banner(console: Console, settings: RelaySettings) -> None:
    scheme = "https" if settings.tls_enabled else "http"
    if settings.router_api_key:
        key_display = "[green]✓ Set[/green]"
    else:
        key_display = "[yellow]✗ Not Set (anyone who can reach the port can use it)[/yellow]"
    if settings.check_interval_ms > 0:
        interval_display = f"every {settings.check_interval_seconds:g}s"
    else:
        interval_display = "disabled"

    console.print("━" * 70)
    console.print(f"[bold]Qwen OAuth Relay[/bold] v{__version__}")
    console.print(f"Listening on {scheme}://{settings.host}:{settings.port}/v1")
    console.print(f"Router API Key: {key_display}")
    console.print(f"Credentials: {settings.credentials_path}")
    console.print(f"Default model: {settings.default_model}")
    console.print(f"Background token check: {interval_display}")
    if settings.enable_request_logging:
        console.print("Request logging: [green]enabled[/green]")
    console.print("━" * 70)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    root_dir = get_default_root()
    load_dotenv(get_data_file(".env", root_dir))

    console = Console()
    try:
        settings = load_settings(os.environ)
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        sys.exit(1)

    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.enable_request_logging:
        settings.enable_request_logging = True

    configure_logging(get_logs_dir(root_dir))
    if settings.enable_request_logging:
        logging.info("Request logging is enabled.")

    print_banner(console, settings)

    import uvicorn

    from .app import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        ssl_keyfile=str(settings.tls_key_path) if settings.tls_key_path else None,
        ssl_certfile=str(settings.tls_cert_path) if settings.tls_cert_path else None,
    )


if __name__ == "__main__":
    main()
