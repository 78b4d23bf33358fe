__version__ = "0.1.0"

from .credential_store import CredentialRecord, CredentialStore
from .error_handler import (
    AuthMissingError,
    ClientDisconnectedError,
    InvalidRequestError,
    NoCredentialsError,
    PersistenceError,
    RefreshTokenInvalidError,
    RefreshTransientError,
    RelayError,
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTransportError,
)
from .token_manager import TokenManager, TokenState, TokenStatus
from .upstream_client import UpstreamClientFactory
from .relay_engine import RelayEngine, RelayResponse
from .background_refresher import BackgroundRefresher

__all__ = [
    "__version__",
    "CredentialRecord",
    "CredentialStore",
    "TokenManager",
    "TokenState",
    "TokenStatus",
    "UpstreamClientFactory",
    "RelayEngine",
    "RelayResponse",
    "BackgroundRefresher",
    "RelayError",
    "AuthMissingError",
    "InvalidRequestError",
    "NoCredentialsError",
    "PersistenceError",
    "RefreshTokenInvalidError",
    "RefreshTransientError",
    "UpstreamError",
    "UpstreamRateLimitedError",
    "UpstreamTransportError",
    "ClientDisconnectedError",
]
