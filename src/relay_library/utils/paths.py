# src/relay_library/utils/paths.py
"""
Path helpers for the relay.

Logs live under the current working directory (or the directory of a frozen
executable); the credential file defaults to the location the Qwen CLI writes.
"""

import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_CREDENTIALS_PATH = Path("~/.qwen/oauth_creds.json")


def get_default_root() -> Path:
    """
    Get the default root directory for data files.

    - EXE mode (PyInstaller): directory containing the executable
    - Otherwise: current working directory
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory, creating it if needed.

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    logs_dir = base / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_data_file(filename: str, root: Optional[Union[Path, str]] = None) -> Path:
    """Get the path to a data file (e.g. ".env") in the root directory. Does not create it."""
    base = Path(root) if root else get_default_root()
    return base / filename


def resolve_credentials_path(path: Optional[Union[Path, str]] = None) -> Path:
    """Expand '~' and return an absolute credential file path."""
    raw = Path(path) if path else DEFAULT_CREDENTIALS_PATH
    return raw.expanduser().resolve()
