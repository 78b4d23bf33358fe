# src/relay_library/transaction_logger.py

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .utils.paths import get_logs_dir
from .utils.resilient_io import safe_log_write, safe_mkdir, safe_write_json

lib_logger = logging.getLogger("relay_library")


def _get_relay_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    logs_dir = get_logs_dir(root) / "relay_logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


class TransactionLogger:
    """
    Writes the request payload, raw upstream stream, errors and final response
    of a single relay transaction to its own directory.

    Fire-and-forget: if disk writes fail the entry is dropped.
    """

    def __init__(
        self,
        model_name: str,
        request_id: str,
        enabled: bool = True,
        root: Optional[Union[Path, str]] = None,
    ):
        self.enabled = enabled
        self.log_dir: Optional[Path] = None
        if not self.enabled:
            return

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        safe_model_name = model_name.replace("/", "_").replace(":", "_")
        try:
            self.log_dir = (
                _get_relay_logs_dir(root) / f"{timestamp}_{safe_model_name}_{request_id}"
            )
        except OSError as e:
            lib_logger.error(f"Failed to create relay log directory: {e}")
            self.enabled = False
            return
        self.enabled = safe_mkdir(self.log_dir, lib_logger)

    def log_request(self, payload: Dict[str, Any]) -> None:
        """Logs the outbound payload sent to Qwen."""
        if not self.enabled:
            return
        safe_write_json(
            self.log_dir / "request_payload.json",
            payload,
            lib_logger,
            atomic=False,
            ensure_ascii=False,
        )

    def log_response_chunk(self, chunk: str) -> None:
        """Logs a raw line from the upstream response stream."""
        if not self.enabled:
            return
        safe_log_write(self.log_dir / "response_stream.log", chunk + "\n", lib_logger)

    def log_error(self, error_message: str) -> None:
        if not self.enabled:
            return
        timestamp = datetime.now(timezone.utc).isoformat()
        safe_log_write(
            self.log_dir / "error.log", f"[{timestamp}] {error_message}\n", lib_logger
        )

    def log_final_response(self, response_data: Dict[str, Any]) -> None:
        """Logs the final response (reassembled for streams)."""
        if not self.enabled:
            return
        safe_write_json(
            self.log_dir / "final_response.json",
            response_data,
            lib_logger,
            atomic=False,
            ensure_ascii=False,
        )
