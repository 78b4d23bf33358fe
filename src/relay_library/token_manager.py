# src/relay_library/token_manager.py

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, NoReturn, Optional, Tuple

import httpx

from .credential_store import CredentialRecord, CredentialStore
from .error_handler import (
    CorruptCredentialsError,
    NoCredentialsError,
    RefreshTokenInvalidError,
    RefreshTransientError,
    preview_body,
)
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("relay_library")

CLIENT_ID = (
    "f0304373b74a44d2b584a3fb70ca9e56"  # https://api.kilocode.ai/extension-config.json
)
TOKEN_ENDPOINT = "https://chat.qwen.ai/api/v1/oauth2/token"
DEFAULT_API_BASE = "https://portal.qwen.ai/v1"
DEFAULT_SAFETY_MARGIN_SECONDS = 5 * 60


class TokenState(str, Enum):
    MISSING = "missing"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass(frozen=True)
class TokenStatus:
    """Read-only snapshot of the credential for health reporting."""

    available: bool
    state: TokenState
    expires_at: Optional[float]
    api_base: str


def normalize_api_base(resource_url: Optional[str], default: str = DEFAULT_API_BASE) -> str:
    """
    Turn a resource hint such as "portal.qwen.ai" into "https://portal.qwen.ai/v1".

    Missing hints fall back to `default`.
    """
    base = (resource_url or "").strip() or default
    if not base.startswith(("http://", "https://")):
        base = f"https://{base}"
    base = base.rstrip("/")
    if not base.endswith("/v1"):
        base = f"{base}/v1"
    return base


class TokenManager:
    """
    Owns the Qwen OAuth credential for the lifetime of the process.

    All reads of the access token go through get_valid_token(); all writes
    happen inside the single in-flight refresh task. Concurrent callers that
    need a refresh attach to the same task instead of starting a new one.
    """

    def __init__(
        self,
        store: CredentialStore,
        safety_margin_seconds: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        default_api_base: str = DEFAULT_API_BASE,
        token_endpoint: str = TOKEN_ENDPOINT,
        client_id: str = CLIENT_ID,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._safety_margin = safety_margin_seconds
        self._default_api_base = default_api_base
        self._token_endpoint = token_endpoint
        self._client_id = client_id
        self._clock = clock

        self._record: Optional[CredentialRecord] = None
        self._state = TokenState.MISSING
        self._refresh_task: Optional[asyncio.Task] = None
        # Bumped on every successful refresh; lets slow store reads detect they are stale
        self._generation = 0
        # Set when the provider rejected a refresh token; cleared once the file holds a different one
        self._fatal_error: Optional[Tuple[int, str]] = None
        self._rejected_refresh_token: Optional[str] = None

    @property
    def credential_path(self) -> str:
        return str(self._store.path)

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def _load_record(self) -> Optional[CredentialRecord]:
        """Re-read the store (cheap when the file is unchanged) and update the cached record."""
        generation = self._generation
        try:
            record = await asyncio.to_thread(self._store.load)
        except CorruptCredentialsError as e:
            lib_logger.error(f"{e}. Treating credential store as empty.")
            record = None

        if generation != self._generation and self._record is not None:
            # A refresh finished while we were reading; its record is newer than ours
            return self._record

        if record is None:
            self._record = None
            if not self.refresh_in_flight:
                self._state = TokenState.MISSING
            return None

        if self._fatal_error is not None and record.refresh_token != self._rejected_refresh_token:
            lib_logger.info("Credential file changed after a rejected refresh. Clearing failed state.")
            self._fatal_error = None
            self._rejected_refresh_token = None

        self._record = record
        if self._fatal_error is not None:
            self._state = TokenState.FAILED
        elif not self.refresh_in_flight:
            self._state = (
                TokenState.NEAR_EXPIRY if self._is_near_expiry(record) else TokenState.VALID
            )
        return record

    def _is_near_expiry(self, record: CredentialRecord) -> bool:
        return record.expires_within(self._safety_margin, now=self._clock())

    async def get_valid_token(self) -> str:
        """
        Return an access token that will not expire within the safety margin.

        The common path performs no network I/O. A token inside the margin is
        refreshed first (sharing any refresh already in flight).

        Raises:
            NoCredentialsError: store missing or corrupt
            RefreshTokenInvalidError: provider rejected the refresh token
            RefreshTransientError: refresh failed, retry later
        """
        record = await self._load_record()
        if record is None:
            raise NoCredentialsError(self.credential_path)
        if self._fatal_error is not None:
            self._raise_fatal()

        if self._is_near_expiry(record):
            lib_logger.info(
                f"Token expires at {time.strftime('%H:%M:%S', time.localtime(record.expiry_seconds))}. Refreshing..."
            )
            record = await self.refresh(stale_token=record.access_token)
        return record.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> CredentialRecord:
        """
        Refresh the access token, at most one exchange call in flight at a time.

        Args:
            stale_token: The token the caller saw rejected. If the cached token
                already differs, another request refreshed it and no new call is made.
        """
        if self._fatal_error is not None:
            self._raise_fatal()

        if self._refresh_task is None:
            if (
                stale_token is not None
                and self._record is not None
                and self._record.access_token != stale_token
                and not self._is_near_expiry(self._record)
            ):
                return self._record

            self._state = TokenState.REFRESHING
            self._refresh_task = asyncio.create_task(self._run_refresh())
            self._refresh_task.add_done_callback(self._on_refresh_done)
        else:
            lib_logger.debug("Refresh already in progress, waiting for it to finish.")

        # Shielded: a cancelled waiter (e.g. a disconnected client) must not cancel the refresh
        return await asyncio.shield(self._refresh_task)

    def _raise_fatal(self) -> NoReturn:
        # A new instance per request; re-raising one stored exception grows its traceback
        status_code, detail = self._fatal_error
        raise RefreshTokenInvalidError(self.credential_path, status_code, detail)

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if task.cancelled():
            return
        # Retrieve the exception so it is not reported as unhandled when all waiters left
        if task.exception() is not None and self._state == TokenState.REFRESHING:
            self._state = TokenState.NEAR_EXPIRY if self._record else TokenState.MISSING

    async def _run_refresh(self) -> CredentialRecord:
        # The provider rotates refresh tokens, so always use the latest one on disk
        try:
            current = await asyncio.to_thread(self._store.load)
        except CorruptCredentialsError as e:
            lib_logger.error(f"{e}. Cannot refresh.")
            current = None
        if current is None:
            raise NoCredentialsError(self.credential_path)

        lib_logger.debug(f"Refreshing Qwen OAuth token for '{self._store.path.name}'...")
        token_data = await self._exchange_refresh_token(current.refresh_token)

        try:
            new_record = current.with_refreshed_token(token_data, now=self._clock())
        except (KeyError, TypeError, ValueError) as e:
            raise RefreshTransientError(f"Token endpoint returned an unusable response: {e}")

        await asyncio.to_thread(self._store.save, new_record)

        self._record = new_record
        self._generation += 1
        self._state = TokenState.VALID
        lib_logger.info(
            f"Token refreshed. New expiry: {time.strftime('%H:%M:%S', time.localtime(new_record.expiry_seconds))}"
        )
        return new_record

    async def _exchange_refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """Issue exactly one token-exchange call. No retries here."""
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
        }

        try:
            async with httpx.AsyncClient(timeout=TimeoutConfig.refresh()) as client:
                response = await client.post(self._token_endpoint, headers=headers, data=data)
        except httpx.TimeoutException as e:
            lib_logger.error(f"Token refresh timed out: {e!r}")
            raise RefreshTransientError("Token refresh timed out.")
        except httpx.RequestError as e:
            lib_logger.error(f"Network error during token refresh: {e!r}")
            raise RefreshTransientError(f"Network error during token refresh: {e}")

        if response.status_code in (400, 401):
            detail = preview_body(response.content)
            lib_logger.error(
                f"Refresh token rejected (HTTP {response.status_code}) for '{self._store.path.name}': {detail}"
            )
            self._fatal_error = (response.status_code, detail)
            self._rejected_refresh_token = refresh_token
            self._state = TokenState.FAILED
            self._raise_fatal()

        if response.status_code >= 400:
            lib_logger.warning(
                f"Token refresh failed with HTTP {response.status_code}: {preview_body(response.content)}"
            )
            raise RefreshTransientError(
                f"Token endpoint returned HTTP {response.status_code}."
            )

        try:
            token_data = response.json()
        except ValueError:
            raise RefreshTransientError("Token endpoint returned invalid JSON.")
        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise RefreshTransientError("Token endpoint response has no access_token.")
        return token_data

    def resolve_base_endpoint(self) -> str:
        """The versioned API base for the current credential."""
        resource_url = self._record.resource_url if self._record else None
        return normalize_api_base(resource_url, self._default_api_base)

    async def status(self) -> TokenStatus:
        """Health snapshot. Re-reads the store but never calls the network."""
        record = await self._load_record()
        return TokenStatus(
            available=record is not None,
            state=self._state,
            expires_at=record.expiry_seconds if record else None,
            api_base=self.resolve_base_endpoint(),
        )

    async def proactively_refresh(self) -> None:
        """Run the validity check in the background, logging instead of raising."""
        try:
            await self.get_valid_token()
        except NoCredentialsError as e:
            lib_logger.warning(f"Background check: {e.message}")
        except (RefreshTokenInvalidError, RefreshTransientError) as e:
            lib_logger.error(f"Background refresh failed: {e.message}")
        except Exception as e:
            lib_logger.error(f"Unexpected error during background token check: {e}", exc_info=True)
