# src/relay_library/credential_store.py

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .error_handler import CorruptCredentialsError, PersistenceError
from .utils.resilient_io import safe_write_json

lib_logger = logging.getLogger("relay_library")

KNOWN_FIELDS = ("access_token", "token_type", "refresh_token", "resource_url", "expiry_date")


@dataclass(frozen=True)
class CredentialRecord:
    """
    One Qwen OAuth credential as persisted by the Qwen CLI.

    expiry_date is an epoch timestamp in milliseconds. Unknown keys found in
    the file are kept in `extra` and written back unchanged.
    """

    access_token: str
    refresh_token: str
    expiry_date: int
    resource_url: Optional[str] = None
    token_type: str = "Bearer"
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=True)

    @property
    def expiry_seconds(self) -> float:
        return self.expiry_date / 1000

    def expires_within(self, margin_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now + margin_seconds >= self.expiry_seconds

    def with_refreshed_token(
        self, token_data: Dict[str, Any], now: Optional[float] = None
    ) -> "CredentialRecord":
        """
        Return a new record built from a token endpoint response.

        Access token and expiry always change together; refresh token and
        resource hint keep their old values when the provider omits them.
        """
        now = time.time() if now is None else now
        return replace(
            self,
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or self.refresh_token,
            expiry_date=int((now + float(token_data["expires_in"])) * 1000),
            resource_url=token_data.get("resource_url") or self.resource_url,
            token_type=token_data.get("token_type") or self.token_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "access_token": self.access_token,
                "token_type": self.token_type,
                "refresh_token": self.refresh_token,
                "resource_url": self.resource_url,
                "expiry_date": self.expiry_date,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        """Parse a persisted record. Raises ValueError on missing or invalid fields."""
        if not isinstance(data, dict):
            raise ValueError("credential file must contain a JSON object")

        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("missing access_token")
        if not refresh_token or not isinstance(refresh_token, str):
            raise ValueError("missing refresh_token")

        raw_expiry = data.get("expiry_date", 0)
        if isinstance(raw_expiry, bool):
            raise ValueError(f"invalid expiry_date: {raw_expiry!r}")
        try:
            expiry_date = int(raw_expiry or 0)
        except (TypeError, ValueError):
            raise ValueError(f"invalid expiry_date: {raw_expiry!r}")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_date=expiry_date,
            resource_url=data.get("resource_url") or None,
            token_type=data.get("token_type") or "Bearer",
            extra={k: v for k, v in data.items() if k not in KNOWN_FIELDS},
        )


class CredentialStore:
    """
    File-backed storage for the single credential record.

    The file is shared with (and rewritten by) the external Qwen login tool,
    so load() re-reads it whenever its mtime or size changed. No network access.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._cached: Optional[CredentialRecord] = None
        self._cached_stamp: Optional[Tuple[int, int]] = None

    def _stat_stamp(self) -> Optional[Tuple[int, int]]:
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def load(self) -> Optional[CredentialRecord]:
        """
        Return the current record, or None when the file does not exist.

        Raises:
            CorruptCredentialsError: the file exists but cannot be parsed
        """
        stamp = self._stat_stamp()
        if stamp is None:
            if self._cached is not None:
                lib_logger.warning(f"Credential file '{self.path}' disappeared.")
            self._cached = None
            self._cached_stamp = None
            return None

        if self._cached is not None and stamp == self._cached_stamp:
            return self._cached

        lib_logger.debug(f"Reading Qwen credentials from file: {self.path}")
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self._cached = None
            self._cached_stamp = None
            return None
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptCredentialsError(str(self.path), str(e))

        try:
            record = CredentialRecord.from_dict(data)
        except ValueError as e:
            raise CorruptCredentialsError(str(self.path), str(e))

        self._cached = record
        self._cached_stamp = stamp
        return record

    def save(self, record: CredentialRecord) -> None:
        """
        Atomically replace the credential file with `record`.

        The cached copy is only updated after the write succeeded.

        Raises:
            PersistenceError: the file could not be written
        """
        if not safe_write_json(
            self.path, record.to_dict(), lib_logger, secure_permissions=True
        ):
            raise PersistenceError(
                f"Failed to persist refreshed credentials to '{self.path}'. "
                f"The previous record is still in place."
            )
        self._cached = record
        self._cached_stamp = self._stat_stamp()
        lib_logger.debug(f"Saved updated Qwen OAuth credentials to '{self.path.name}'.")
