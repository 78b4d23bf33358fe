# src/relay_library/error_handler.py
"""
Error taxonomy for the relay.

Every error the relay itself produces derives from RelayError and renders as
{"error": {"message", "type", "code"?}}. Upstream errors that must reach the
caller verbatim (UpstreamError, UpstreamRateLimitedError) carry the original
status, body and headers instead.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

lib_logger = logging.getLogger("relay_library")


class RelayError(Exception):
    """Base class for errors surfaced to a single relay caller."""

    status_code: int = 500
    error_type: str = "relay_error"
    code: Optional[str] = None

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or "Relay error"
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"message": self.message, "type": self.error_type}
        if self.code:
            error["code"] = self.code
        return {"error": error}


class AuthMissingError(RelayError):
    """Invalid or missing router API key."""

    status_code = 401
    error_type = "authentication_error"
    code = "invalid_api_key"


class InvalidRequestError(RelayError):
    """The request body is not a valid chat completion request."""

    status_code = 400
    error_type = "invalid_request_error"


class NoCredentialsError(RelayError):
    """No usable Qwen OAuth credentials are available."""

    error_type = "no_credentials"
    code = "no_credentials"

    def __init__(self, credential_path: str = "", message: str = ""):
        self.credential_path = credential_path
        super().__init__(
            message
            or f"Failed to load an access token from '{credential_path}'. "
            f"Log in with the Qwen CLI to create the credential file."
        )


class CorruptCredentialsError(Exception):
    """
    Raised by the credential store when the credential file exists but cannot
    be parsed into a record. The token manager treats this as an empty store.
    """

    def __init__(self, credential_path: str, reason: str):
        self.credential_path = credential_path
        self.reason = reason
        super().__init__(f"Corrupt credential file '{credential_path}': {reason}")


class PersistenceError(RelayError):
    """A refreshed credential record could not be written to disk."""

    error_type = "persistence_error"
    code = "credential_write_failed"


class RefreshTokenInvalidError(RelayError):
    """
    The OAuth provider rejected the refresh token.

    Fatal until the credential file is regenerated out of band; every request
    fails with this error until then.
    """

    error_type = "refresh_token_invalid"
    code = "refresh_token_invalid"

    def __init__(self, credential_path: str = "", status_code: int = 0, detail: str = ""):
        self.credential_path = credential_path
        self.provider_status = status_code
        self.detail = detail
        message = (
            f"Qwen rejected the refresh token (HTTP {status_code}). "
            f"Re-authenticate with the Qwen CLI to regenerate '{credential_path}'."
        )
        if detail:
            message = f"{message} Provider said: {detail}"
        super().__init__(message)


class RefreshTransientError(RelayError):
    """Token refresh failed for a transient reason; safe to retry later."""

    error_type = "refresh_transient_error"
    code = "refresh_failed"


class UpstreamTransportError(RelayError):
    """The provider could not be reached."""

    status_code = 502
    error_type = "upstream_transport_error"

    def __init__(self, message: str = "", timed_out: bool = False):
        if timed_out:
            self.status_code = 504
            self.code = "upstream_timeout"
        super().__init__(message)


class ClientDisconnectedError(Exception):
    """The caller closed the connection before the response completed. Not reported."""


class UpstreamError(Exception):
    """
    Non-2xx response from the provider, passed through to the caller verbatim.

    Attributes:
        status_code: Upstream HTTP status
        content: Raw upstream body
        headers: Headers worth forwarding (content type)
    """

    forwarded_headers = ("content-type",)

    def __init__(self, status_code: int, content: bytes, headers: Mapping[str, str]):
        self.status_code = status_code
        self.content = content
        self.headers = {
            name: headers[name] for name in self.forwarded_headers if name in headers
        }
        super().__init__(f"Upstream HTTP {status_code}: {preview_body(content)}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamError":
        """Build the matching passthrough error from an already-read response."""
        error_cls = (
            UpstreamRateLimitedError if response.status_code == 429 else UpstreamError
        )
        return error_cls(response.status_code, response.content, response.headers)


class UpstreamRateLimitedError(UpstreamError):
    """HTTP 429 from the provider; Retry-After travels back to the caller unchanged."""

    forwarded_headers = ("content-type", "retry-after")


def is_auth_failure(status_code: int) -> bool:
    return status_code in (401, 403)


def preview_body(content: bytes, limit: int = 300) -> str:
    """Decode and truncate a response body for log lines."""
    text = content.decode("utf-8", errors="replace") if content else ""
    if len(text) > limit:
        return text[:limit] + "..."
    return text
