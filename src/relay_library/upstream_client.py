# src/relay_library/upstream_client.py

import asyncio
import logging
import platform
import random
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from . import __version__
from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("relay_library")

DEFAULT_TRANSPORT_RETRIES = 3
BACKOFF_INITIAL_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 8.0

# Failures where the request never reached the provider, so resending is safe
RETRYABLE_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def build_user_agent(version: str = __version__) -> str:
    return f"QwenCode/{version} ({platform.system().lower()}; {platform.machine().lower()})"


def provider_headers(user_agent: str) -> Dict[str, str]:
    """Identification headers the Qwen portal expects from OAuth clients."""
    return {
        "User-Agent": user_agent,
        "X-DashScope-UserAgent": user_agent,
        "X-DashScope-CacheControl": "enable",
        "X-DashScope-AuthType": "qwen-oauth",
    }


def backoff_delay(attempt: int, initial: float = BACKOFF_INITIAL_SECONDS, cap: float = BACKOFF_MAX_SECONDS) -> float:
    """Exponential backoff doubling from `initial`, capped, plus up to 25% jitter."""
    delay = min(cap, initial * (2**attempt))
    return delay + random.uniform(0, delay * 0.25)


class RetryTransport(httpx.AsyncBaseTransport):
    """
    Wraps a transport and retries requests that failed to connect.

    Only connection-level failures are retried; once the provider has seen
    the request, errors propagate to the caller.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = DEFAULT_TRANSPORT_RETRIES,
        initial_backoff: float = BACKOFF_INITIAL_SECONDS,
        max_backoff: float = BACKOFF_MAX_SECONDS,
    ):
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        attempt = 0
        while True:
            try:
                return await self._transport.handle_async_request(request)
            except RETRYABLE_TRANSPORT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise
                wait_time = backoff_delay(attempt, self.initial_backoff, self.max_backoff)
                lib_logger.warning(
                    f"Network error reaching {request.url.host}: {e!r}. "
                    f"Retry {attempt + 1}/{self.max_retries} in {wait_time:.2f}s"
                )
                attempt += 1
                await asyncio.sleep(wait_time)

    async def aclose(self) -> None:
        await self._transport.aclose()


@dataclass(frozen=True)
class UpstreamClientConfig:
    base_url: str
    access_token: str
    timeout: httpx.Timeout
    max_transport_retries: int = DEFAULT_TRANSPORT_RETRIES
    headers: Dict[str, str] = field(default_factory=dict)

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        headers["Authorization"] = f"Bearer {self.access_token}"
        headers["Content-Type"] = "application/json"
        return headers


class UpstreamClientFactory:
    """
    Assembles short-lived httpx clients for the Qwen chat completions API.

    configure() is pure; create() builds the client without performing I/O.
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        max_transport_retries: int = DEFAULT_TRANSPORT_RETRIES,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self.user_agent = user_agent or build_user_agent()
        self.max_transport_retries = max_transport_retries
        self._timeout = timeout

    def configure(self, access_token: str, base_url: str) -> UpstreamClientConfig:
        return UpstreamClientConfig(
            base_url=base_url,
            access_token=access_token,
            timeout=self._timeout or TimeoutConfig.upstream(),
            max_transport_retries=self.max_transport_retries,
            headers=provider_headers(self.user_agent),
        )

    def create(self, config: UpstreamClientConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url,
            headers=config.request_headers(),
            timeout=config.timeout,
            transport=RetryTransport(max_retries=config.max_transport_retries),
        )
