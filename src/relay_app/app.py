# src/relay_app/app.py

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from relay_library import (
    AuthMissingError,
    BackgroundRefresher,
    ClientDisconnectedError,
    CredentialStore,
    InvalidRequestError,
    RelayEngine,
    RelayError,
    RelayResponse,
    TokenManager,
    UpstreamClientFactory,
)

from .request_logger import log_request_to_console
from .settings import RelaySettings, load_settings

MODEL_CREATED = 1677610602
STATIC_MODELS = ("qwen3-coder-plus", "qwen3-coder-flash")

# nginx convention for "client closed request"; only ever seen in server logs
CLIENT_CLOSED_REQUEST = 499


# --- Pydantic Models ---
class ModelCard(BaseModel):
    """Basic model card for minimal response."""

    id: str
    object: str = "model"
    created: int = MODEL_CREATED
    owned_by: str = "qwen"


class ModelList(BaseModel):
    """List of models response."""

    object: str = "list"
    data: List[ModelCard]


class HealthStatus(BaseModel):
    status: str = "ok"
    server_time: str
    token_available: bool
    token_expires: Optional[str] = None
    token_state: str
    api_base: str
    session_id: str


api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_token_manager(request: Request) -> TokenManager:
    """Dependency to get the token manager instance from the app state."""
    return request.app.state.token_manager


def get_relay_engine(request: Request) -> RelayEngine:
    """Dependency to get the relay engine instance from the app state."""
    return request.app.state.relay_engine


async def verify_router_key(request: Request, auth: Optional[str] = Depends(api_key_header)):
    """Dependency to verify the router API key."""
    router_api_key = request.app.state.settings.router_api_key
    # If ROUTER_API_KEY is not set, skip verification (open access)
    if not router_api_key:
        return auth
    # Any scheme is accepted; only the token is compared
    _, _, token = (auth or "").strip().partition(" ")
    if not token or token.strip() != router_api_key:
        raise AuthMissingError("Invalid or missing API Key")
    return auth


def to_http_response(result: RelayResponse) -> Response:
    if result.is_stream:
        return StreamingResponse(
            result.stream, media_type="text/event-stream", headers=result.headers
        )
    if result.content is not None:
        # Upstream error passthrough: body and content type untouched
        return Response(
            content=result.content, status_code=result.status_code, headers=result.headers
        )
    return JSONResponse(
        content=result.body, status_code=result.status_code, headers=result.headers
    )


def list_model_cards(default_model: str) -> ModelList:
    model_ids = list(STATIC_MODELS)
    if default_model not in model_ids:
        model_ids.append(default_model)
    return ModelList(data=[ModelCard(id=model_id) for model_id in model_ids])


def create_app(
    settings: Optional[RelaySettings] = None,
    client_factory: Optional[UpstreamClientFactory] = None,
) -> FastAPI:
    """
    Build the relay application.

    The credential store, token manager and relay engine are created here and
    shared by every request through app.state.
    """
    settings = settings or load_settings()

    store = CredentialStore(settings.credentials_path)
    token_manager = TokenManager(
        store,
        safety_margin_seconds=settings.refresh_buffer_seconds,
        default_api_base=settings.api_base,
    )
    relay_engine = RelayEngine(
        token_manager,
        client_factory or UpstreamClientFactory(),
        default_model=settings.default_model,
        enable_request_logging=settings.enable_request_logging,
    )
    background_refresher = BackgroundRefresher(
        token_manager, settings.check_interval_seconds
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Check the credential once and run the background refresher for the app's lifetime."""
        if background_refresher.enabled:
            # The refresher checks immediately, then every interval
            background_refresher.start()
        else:
            await token_manager.proactively_refresh()

        status = await token_manager.status()
        if status.available:
            logging.info(
                f"Qwen credentials loaded from '{token_manager.credential_path}' (state: {status.state.value})."
            )
        else:
            logging.warning(
                f"No Qwen credentials at '{token_manager.credential_path}'. "
                "Requests will fail until you log in with the Qwen CLI."
            )

        yield

        await background_refresher.stop()
        logging.info("Relay shut down.")

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.token_manager = token_manager
    app.state.relay_engine = relay_engine
    app.state.background_refresher = background_refresher

    # Add CORS middleware to allow all origins, methods, and headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    def read_root():
        return {"Status": "Qwen OAuth relay is running"}

    @app.get("/health", response_model=HealthStatus)
    async def health(
        request: Request, manager: TokenManager = Depends(get_token_manager)
    ):
        status = await manager.status()
        token_expires = None
        if status.expires_at is not None:
            token_expires = datetime.fromtimestamp(status.expires_at, timezone.utc).isoformat()
        return HealthStatus(
            server_time=datetime.now(timezone.utc).isoformat(),
            token_available=status.available,
            token_expires=token_expires,
            token_state=status.state.value,
            api_base=status.api_base,
            session_id=request.app.state.relay_engine.session_id,
        )

    @app.get("/v1/models", response_model=ModelList)
    async def list_models(request: Request):
        return list_model_cards(request.app.state.settings.default_model)

    @app.post("/v1/chat/completions")
    async def chat_completions(
        request: Request,
        engine: RelayEngine = Depends(get_relay_engine),
        _=Depends(verify_router_key),
    ):
        """OpenAI-compatible endpoint relayed to the Qwen portal."""
        try:
            request_data = await request.json()
        except ValueError:
            raise InvalidRequestError("Invalid JSON in request body.")

        if isinstance(request_data, dict):
            log_request_to_console(
                url=str(request.url),
                client_info=tuple(request.client) if request.client else None,
                request_data=request_data,
                default_model=engine.default_model,
            )

        try:
            result = await engine.relay(request_data, is_disconnected=request.is_disconnected)
        except ClientDisconnectedError:
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        return to_http_response(result)

    return app
