# src/relay_library/relay_engine.py

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, Union

import httpx

from .error_handler import (
    ClientDisconnectedError,
    InvalidRequestError,
    RefreshTransientError,
    RelayError,
    UpstreamError,
    UpstreamTransportError,
    is_auth_failure,
    preview_body,
)
from .request_transformer import DEFAULT_MODEL, build_outbound_request
from .response_builder import (
    SSE_DONE,
    assemble_stream_chunks,
    build_completion_envelope,
    format_sse,
    parse_sse_line,
    wrap_stream_chunk,
)
from .token_manager import TokenManager
from .transaction_logger import TransactionLogger
from .upstream_client import UpstreamClientFactory, backoff_delay

lib_logger = logging.getLogger("relay_library")

DisconnectCheck = Callable[[], Awaitable[bool]]


class RelayState(str, Enum):
    RECEIVED = "received"
    TOKEN_ACQUIRED = "token_acquired"
    SENT = "sent"
    AUTH_FAILED = "auth_failed"
    TOKEN_REFRESHED = "token_refreshed"
    STREAMING_RESPONSE = "streaming_response"
    BUFFERED_RESPONSE = "buffered_response"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RelayContext:
    """Per-request state. The payload is built once and replayed as-is on retry."""

    body: Dict[str, Any]
    payload: Dict[str, Any]
    request_id: str
    stream: bool
    model: str
    created: int
    state: RelayState = RelayState.RECEIVED
    auth_retry_attempted: bool = False
    transient_retry_attempted: bool = False
    attempts: int = 0


@dataclass
class RelayResponse:
    """
    What the server writes back: a JSON body, verbatim upstream content, or a
    stream of SSE frames.
    """

    status_code: int = 200
    body: Optional[Dict[str, Any]] = None
    content: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)
    stream: Optional[AsyncIterator[str]] = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class RelayEngine:
    """
    Forwards chat completion requests to Qwen with a valid OAuth token.

    Flow per request: transform once, acquire token, send; on 401/403 refresh
    and replay the same payload once; then stream or buffer the result back.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        client_factory: Optional[UpstreamClientFactory] = None,
        session_id: Optional[str] = None,
        default_model: str = DEFAULT_MODEL,
        enable_request_logging: bool = False,
        log_root: Optional[Union[Path, str]] = None,
        disconnect_poll_interval: float = 0.25,
        transient_retry_delay: float = 0.5,
    ):
        self._token_manager = token_manager
        self._client_factory = client_factory or UpstreamClientFactory()
        self.session_id = session_id or str(uuid.uuid4())
        self.default_model = default_model
        self.enable_request_logging = enable_request_logging
        self._log_root = log_root
        self._disconnect_poll_interval = disconnect_poll_interval
        self._transient_retry_delay = transient_retry_delay

    def new_context(self, body: Any) -> RelayContext:
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object.")
        if "messages" in body and not isinstance(body["messages"], list):
            raise InvalidRequestError("'messages' must be an array.")

        payload = build_outbound_request(
            body, self.session_id, default_model=self.default_model
        )
        return RelayContext(
            body=body,
            payload=payload,
            request_id=f"chatcmpl-{uuid.uuid4().hex}",
            stream=payload["stream"],
            model=payload["model"],
            created=int(time.time()),
        )

    async def relay(
        self, body: Any, is_disconnected: Optional[DisconnectCheck] = None
    ) -> RelayResponse:
        """
        Relay one chat completion request.

        Raises:
            RelayError: token, refresh or transport failures for this request
            ClientDisconnectedError: the caller went away; nothing should be written
        """
        ctx = self.new_context(body)
        file_logger = TransactionLogger(
            ctx.model, ctx.request_id, enabled=self.enable_request_logging, root=self._log_root
        )
        file_logger.log_request(ctx.payload)

        try:
            return await self._run_until_disconnect(
                self._execute(ctx, file_logger, is_disconnected), is_disconnected
            )
        except ClientDisconnectedError:
            ctx.state = RelayState.FAILED
            lib_logger.info(f"[{ctx.request_id}] Client disconnected. Upstream request aborted.")
            raise
        except UpstreamError as e:
            ctx.state = RelayState.FAILED
            lib_logger.warning(f"[{ctx.request_id}] Upstream error passed through: {e}")
            file_logger.log_error(str(e))
            return RelayResponse(
                status_code=e.status_code, content=e.content, headers=dict(e.headers)
            )
        except httpx.TransportError as e:
            ctx.state = RelayState.FAILED
            error = self._as_relay_error(e)
            file_logger.log_error(error.message)
            raise error from e
        except RelayError as e:
            ctx.state = RelayState.FAILED
            lib_logger.error(f"[{ctx.request_id}] Relay failed: {e.message}")
            file_logger.log_error(e.message)
            raise

    async def _run_until_disconnect(
        self, coro: Awaitable[RelayResponse], is_disconnected: Optional[DisconnectCheck]
    ) -> RelayResponse:
        """Await `coro`, cancelling it if the caller disconnects first."""
        if is_disconnected is None:
            return await coro

        work = asyncio.ensure_future(coro)
        try:
            while True:
                done, _ = await asyncio.wait({work}, timeout=self._disconnect_poll_interval)
                if work in done:
                    return work.result()
                if await is_disconnected():
                    work.cancel()
                    try:
                        await work
                    except asyncio.CancelledError:
                        pass
                    raise ClientDisconnectedError()
        finally:
            if not work.done():
                work.cancel()

    async def _execute(
        self,
        ctx: RelayContext,
        file_logger: TransactionLogger,
        is_disconnected: Optional[DisconnectCheck],
    ) -> RelayResponse:
        while True:
            ctx.attempts += 1
            try:
                token = await self._token_manager.get_valid_token()
                ctx.state = RelayState.TOKEN_ACQUIRED
                client, response = await self._send(ctx, token)
            except (RefreshTransientError, httpx.TransportError) as e:
                if ctx.transient_retry_attempted:
                    if isinstance(e, RelayError):
                        raise
                    raise self._as_relay_error(e) from e
                ctx.transient_retry_attempted = True
                wait_time = backoff_delay(0, self._transient_retry_delay)
                lib_logger.warning(
                    f"[{ctx.request_id}] Transient failure ({e!r}). Retrying once in {wait_time:.2f}s."
                )
                await asyncio.sleep(wait_time)
                continue

            ctx.state = RelayState.SENT

            if is_auth_failure(response.status_code):
                await self._read_and_close(client, response)
                if ctx.auth_retry_attempted:
                    lib_logger.error(
                        f"[{ctx.request_id}] Qwen returned {response.status_code} again after refresh. Giving up."
                    )
                    raise UpstreamError.from_response(response)

                ctx.auth_retry_attempted = True
                ctx.state = RelayState.AUTH_FAILED
                lib_logger.warning(
                    f"[{ctx.request_id}] Qwen returned {response.status_code}. Refreshing token and retrying once."
                )
                await self._token_manager.refresh(stale_token=token)
                ctx.state = RelayState.TOKEN_REFRESHED
                continue

            if not response.is_success:
                await self._read_and_close(client, response)
                raise UpstreamError.from_response(response)

            if ctx.stream:
                ctx.state = RelayState.STREAMING_RESPONSE
                return RelayResponse(
                    stream=self._stream_frames(ctx, client, response, file_logger, is_disconnected),
                    headers={"Cache-Control": "no-cache"},
                )

            ctx.state = RelayState.BUFFERED_RESPONSE
            return await self._buffered_response(ctx, client, response, file_logger)

    async def _send(
        self, ctx: RelayContext, token: str
    ) -> Tuple[httpx.AsyncClient, httpx.Response]:
        config = self._client_factory.configure(
            token, self._token_manager.resolve_base_endpoint()
        )
        client = self._client_factory.create(config)
        handed_off = False
        try:
            request = client.build_request(
                "POST",
                "/chat/completions",
                json=ctx.payload,
                headers={"Accept": "text/event-stream" if ctx.stream else "application/json"},
            )
            lib_logger.debug(f"[{ctx.request_id}] Qwen request URL: {request.url} (attempt {ctx.attempts})")
            response = await client.send(request, stream=True)
            handed_off = True
            return client, response
        finally:
            if not handed_off:
                await client.aclose()

    @staticmethod
    async def _read_and_close(client: httpx.AsyncClient, response: httpx.Response) -> bytes:
        try:
            return await response.aread()
        finally:
            await response.aclose()
            await client.aclose()

    async def _buffered_response(
        self,
        ctx: RelayContext,
        client: httpx.AsyncClient,
        response: httpx.Response,
        file_logger: TransactionLogger,
    ) -> RelayResponse:
        content = await self._read_and_close(client, response)
        try:
            upstream = json.loads(content)
        except ValueError:
            upstream = None
        if not isinstance(upstream, dict):
            raise UpstreamTransportError(
                f"Qwen returned a non-JSON response: {preview_body(content)}"
            )

        envelope = build_completion_envelope(upstream, ctx.request_id, ctx.created, ctx.model)
        file_logger.log_final_response(envelope)
        ctx.state = RelayState.COMPLETED
        lib_logger.debug(f"[{ctx.request_id}] Request completed.")
        return RelayResponse(body=envelope)

    async def _stream_frames(
        self,
        ctx: RelayContext,
        client: httpx.AsyncClient,
        response: httpx.Response,
        file_logger: TransactionLogger,
        is_disconnected: Optional[DisconnectCheck],
    ) -> AsyncIterator[str]:
        """Read one upstream event, re-wrap it, yield one frame. Ends with [DONE]."""
        chunks = []
        try:
            async for line in response.aiter_lines():
                if is_disconnected is not None and await is_disconnected():
                    raise ClientDisconnectedError()
                if line:
                    file_logger.log_response_chunk(line)
                data = parse_sse_line(line)
                if not data:
                    continue
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    lib_logger.warning(f"[{ctx.request_id}] Could not decode JSON from Qwen: {line}")
                    continue
                if not isinstance(chunk, dict):
                    continue
                if chunk.get("error") and not chunk.get("choices"):
                    # Provider error event: forward unchanged
                    file_logger.log_error(f"Stream error event: {data}")
                    yield format_sse(chunk)
                    continue

                wrapped = wrap_stream_chunk(chunk, ctx.request_id, ctx.created, ctx.model)
                chunks.append(wrapped)
                yield format_sse(wrapped)

            yield SSE_DONE
            ctx.state = RelayState.COMPLETED
            lib_logger.debug(f"[{ctx.request_id}] Stream finished.")
        except ClientDisconnectedError:
            ctx.state = RelayState.FAILED
            lib_logger.info(f"[{ctx.request_id}] Client disconnected. Aborting upstream stream.")
        except httpx.HTTPError as e:
            ctx.state = RelayState.FAILED
            lib_logger.error(f"[{ctx.request_id}] Error during Qwen stream: {e!r}")
            file_logger.log_error(f"Error during Qwen stream: {e!r}")
            error = self._as_relay_error(e)
            yield format_sse(error.to_dict())
            yield SSE_DONE
        finally:
            await response.aclose()
            await client.aclose()
            if chunks:
                file_logger.log_final_response(assemble_stream_chunks(chunks))

    @staticmethod
    def _as_relay_error(exc: Exception) -> RelayError:
        if isinstance(exc, RelayError):
            return exc
        if isinstance(exc, httpx.TimeoutException):
            return UpstreamTransportError(f"Timed out waiting for Qwen: {exc!r}", timed_out=True)
        return UpstreamTransportError(f"Could not reach Qwen: {exc!r}")
