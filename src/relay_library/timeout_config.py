# src/relay_library/timeout_config.py
"""
Centralized timeout configuration for HTTP requests.

Values can be overridden via environment variables:
    TIMEOUT_UPSTREAM - Upstream chat completion call (default: 120s)
    TIMEOUT_REFRESH - OAuth token refresh call (default: 30s)
    TIMEOUT_CONNECT - Connection establishment timeout (default: 30s)
"""

import os
import logging
import httpx

lib_logger = logging.getLogger("relay_library")


class TimeoutConfig:
    """
    Centralized timeout configuration for HTTP requests.

    The upstream and refresh budgets are independent of each other.
    """

    # Default values (in seconds)
    _UPSTREAM = 120.0
    _REFRESH = 30.0
    _CONNECT = 30.0

    @classmethod
    def _get_env_float(cls, key: str, default: float) -> float:
        """Get a float value from environment variable, or return default."""
        value = os.environ.get(key)
        if value is not None:
            try:
                return float(value)
            except ValueError:
                lib_logger.warning(
                    f"Invalid value for {key}: {value}. Using default: {default}"
                )
        return default

    @classmethod
    def connect(cls) -> float:
        """Connection establishment timeout."""
        return cls._get_env_float("TIMEOUT_CONNECT", cls._CONNECT)

    @classmethod
    def upstream_seconds(cls) -> float:
        return cls._get_env_float("TIMEOUT_UPSTREAM", cls._UPSTREAM)

    @classmethod
    def refresh_seconds(cls) -> float:
        return cls._get_env_float("TIMEOUT_REFRESH", cls._REFRESH)

    @classmethod
    def upstream(cls) -> httpx.Timeout:
        """
        Timeout configuration for chat completion calls.

        The same budget bounds the wait for the first byte and the gap
        between streamed chunks.
        """
        total = cls.upstream_seconds()
        return httpx.Timeout(total, connect=min(cls.connect(), total))

    @classmethod
    def refresh(cls) -> httpx.Timeout:
        """Timeout configuration for the OAuth token exchange."""
        total = cls.refresh_seconds()
        return httpx.Timeout(total, connect=min(cls.connect(), total))
