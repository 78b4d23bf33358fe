# src/relay_library/utils/__init__.py

from .paths import (
    DEFAULT_CREDENTIALS_PATH,
    get_default_root,
    get_logs_dir,
    get_data_file,
    resolve_credentials_path,
)
from .resilient_io import (
    safe_write_json,
    safe_log_write,
    safe_mkdir,
)

__all__ = [
    "DEFAULT_CREDENTIALS_PATH",
    "get_default_root",
    "get_logs_dir",
    "get_data_file",
    "resolve_credentials_path",
    "safe_write_json",
    "safe_log_write",
    "safe_mkdir",
]
