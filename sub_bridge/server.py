"""
FastAPI server for the Sub Bridge proxy.
This module contains the application factory and API endpoints.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request

from .auth import TokenResolver
from .config import Config
from .errors import InvalidRequestError, ProxyError
from .proxy import ProxyOrchestrator
from .transport import EgressTransport
from .types import ModelDefaults, try_parse_json

logger = logging.getLogger(__name__)


def _release_timestamp(release_date: str | None) -> int:
    try:
        parsed = datetime.strptime(release_date or "1970-01-01", "%Y-%m-%d")
    except ValueError:
        return 0
    return int(parsed.replace(tzinfo=timezone.utc).timestamp())


def anthropic_models_from_catalog(catalog: dict) -> list[dict]:
    """Turn a models.dev catalog into OpenAI model objects, newest first."""
    anthropic_models = ((catalog or {}).get("anthropic") or {}).get("models") or {}
    models = [
        {
            "id": model_id,
            "object": "model",
            "created": _release_timestamp(model_data.get("release_date")),
            "owned_by": "anthropic",
        }
        for model_id, model_data in anthropic_models.items()
    ]
    models.sort(key=lambda model: model["created"], reverse=True)
    return models


def create_app(
    config: Config | None = None,
    transport: EgressTransport | None = None,
    resolver: TokenResolver | None = None,
) -> FastAPI:
    """Build the FastAPI application around one configuration value."""
    config = config or Config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan event handler."""
        # Logging is configured by the entry point, not here.
        yield
        await app.state.transport.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.config = config
    app.state.transport = transport or EgressTransport(
        timeout=config.request_timeout, max_retries=config.max_retries
    )
    app.state.resolver = resolver or TokenResolver(
        config.secret_file, client_id=config.anthropic_oauth_client_id
    )
    app.state.orchestrator = ProxyOrchestrator(
        config, app.state.transport, app.state.resolver
    )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        logger.warning(f"❌ {request.url.path} -> {exc.status_code} {exc.code}: {exc.message[:200]}")
        return exc.to_response()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.debug(f"Request: {request.method} {request.url.path}")
        return await call_next(request)

    @app.get("/")
    async def health():
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models():
        try:
            catalog = await app.state.transport.get_json(ModelDefaults.MODELS_CATALOG_URL)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not fetch model catalog: {e}")
            return {"object": "list", "data": []}
        return {"object": "list", "data": anthropic_models_from_catalog(catalog)}

    async def chat_completions(raw_request: Request):
        decoded = try_parse_json(await raw_request.body())
        if not decoded.ok or not isinstance(decoded.value, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return await app.state.orchestrator.handle_chat_completion(
            decoded.value,
            raw_request.headers.get("authorization"),
            raw_request.url.path,
        )

    app.add_api_route("/v1/chat/completions", chat_completions, methods=["POST"])
    app.add_api_route("/v1/messages", chat_completions, methods=["POST"])

    return app


app = create_app()
