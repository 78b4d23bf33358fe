# src/relay_library/utils/resilient_io.py
"""
File writes that report failure instead of raising.

The credential file is replaced atomically so the Qwen CLI and the relay never
see a half-written record; transaction logs are plain appends that may be
dropped.
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Union


def _restrict_permissions(path: Union[str, Path]) -> None:
    try:
        os.chmod(path, 0o600)
    except (OSError, AttributeError):
        # No POSIX permissions (Windows)
        pass


def _replace_file(path: Path, content: str, secure_permissions: bool) -> None:
    """Write to a sibling temp file, then move it over `path`."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if secure_permissions:
            _restrict_permissions(tmp_name)
        shutil.move(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def safe_write_json(
    path: Union[str, Path],
    data: Dict[str, Any],
    logger: logging.Logger,
    atomic: bool = True,
    indent: int = 2,
    ensure_ascii: bool = True,
    secure_permissions: bool = False,
) -> bool:
    """
    Serialize `data` to `path`.

    Args:
        atomic: Replace the file in one move (readers see old or new, never partial)
        secure_permissions: Make the file readable by the owner only

    Returns:
        True if the file was written, False otherwise
    """
    path = Path(path)
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii)
        path.parent.mkdir(parents=True, exist_ok=True)
        if atomic:
            _replace_file(path, content, secure_permissions)
        else:
            path.write_text(content, encoding="utf-8")
            if secure_permissions:
                _restrict_permissions(path)
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Could not write {path}: {e}")
        return False
    return True


def safe_log_write(
    path: Union[str, Path],
    content: str,
    logger: logging.Logger,
    mode: str = "a",
) -> bool:
    """Append `content` to a log file. Returns False if the write was dropped."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, mode, encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        logger.warning(f"Dropped log write to {path}: {e}")
        return False
    return True


def safe_mkdir(path: Union[str, Path], logger: logging.Logger) -> bool:
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Could not create directory {path}: {e}")
        return False
    return True
