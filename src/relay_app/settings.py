# src/relay_app/settings.py

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from relay_library.request_transformer import DEFAULT_MODEL
from relay_library.token_manager import DEFAULT_API_BASE
from relay_library.utils.paths import resolve_credentials_path

from .config_exceptions import ConfigLoadError, ConfigValidationError

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 4000
DEFAULT_REFRESH_BUFFER_MS = 5 * 60 * 1000
DEFAULT_CHECK_INTERVAL_MS = 30 * 60 * 1000

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class RelaySettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    credentials_path: Path = resolve_credentials_path()
    router_api_key: Optional[str] = None
    default_model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    tls_key_path: Optional[Path] = None
    tls_cert_path: Optional[Path] = None
    refresh_buffer_ms: int = DEFAULT_REFRESH_BUFFER_MS
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    enable_request_logging: bool = False

    @property
    def tls_enabled(self) -> bool:
        return self.tls_key_path is not None and self.tls_cert_path is not None

    @property
    def refresh_buffer_seconds(self) -> float:
        return self.refresh_buffer_ms / 1000

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval_ms / 1000


def _get_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logging.warning(f"Invalid value for {name}: '{raw}'. Using default ({default}).")
        return default
    if value < minimum:
        logging.warning(f"{name} must be >= {minimum}, got {value}. Using default ({default}).")
        return default
    return value


def _get_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> RelaySettings:
    """
    Build RelaySettings from environment variables.

    Raises:
        ConfigValidationError: only one of TLS_KEY_PATH / TLS_CERT_PATH is set,
            or PORT is outside 1-65535
        ConfigLoadError: a TLS file does not exist
    """
    if environ is None:
        environ = os.environ

    port = _get_int(environ, "PORT", DEFAULT_PORT, minimum=1)
    if port > 65535:
        raise ConfigValidationError("PORT", f"{port} is not a valid TCP port")

    tls_key = _get_str(environ, "TLS_KEY_PATH")
    tls_cert = _get_str(environ, "TLS_CERT_PATH")
    if bool(tls_key) != bool(tls_cert):
        raise ConfigValidationError(
            "TLS_KEY_PATH/TLS_CERT_PATH", "both must be set to enable HTTPS"
        )
    tls_key_path = Path(tls_key).expanduser() if tls_key else None
    tls_cert_path = Path(tls_cert).expanduser() if tls_cert else None
    for path in (tls_key_path, tls_cert_path):
        if path is not None and not path.is_file():
            raise ConfigLoadError(f"TLS file not found: {path}")

    return RelaySettings(
        host=_get_str(environ, "HOST") or DEFAULT_HOST,
        port=port,
        credentials_path=resolve_credentials_path(_get_str(environ, "CREDENTIALS_PATH")),
        router_api_key=_get_str(environ, "ROUTER_API_KEY"),
        default_model=_get_str(environ, "DEFAULT_MODEL") or DEFAULT_MODEL,
        api_base=_get_str(environ, "QWEN_API_BASE") or DEFAULT_API_BASE,
        tls_key_path=tls_key_path,
        tls_cert_path=tls_cert_path,
        refresh_buffer_ms=_get_int(environ, "REFRESH_BUFFER_MS", DEFAULT_REFRESH_BUFFER_MS),
        check_interval_ms=_get_int(environ, "CHECK_INTERVAL_MS", DEFAULT_CHECK_INTERVAL_MS),
        enable_request_logging=(
            (environ.get("ENABLE_REQUEST_LOGGING") or "").strip().lower() in _TRUE_VALUES
        ),
    )
