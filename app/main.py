"""Entry point for the FastAPI-powered recommendation service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import settings
from .errors import (
    ConfigurationError,
    InvalidInputError,
    RateLimitedError,
    StreamPicksError,
    UpstreamError,
)
from .models import PreferenceRequest
from .rate_limit import RateLimiter
from .services.openrouter import OpenRouterClient
from .services.recommender import RecommendationService
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=10.0),
        )
    )
    openrouter_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openrouter_api_url),
            timeout=httpx.Timeout(settings.openrouter_timeout_seconds, connect=10.0),
        )
    )

    tmdb = TMDBClient(settings, tmdb_http_client)
    openrouter = OpenRouterClient(settings, openrouter_http_client)
    fastapi_app.state.tmdb_client = tmdb
    fastapi_app.state.recommendation_service = RecommendationService(
        settings, tmdb, openrouter
    )

    rate_limiter = get_rate_limiter(fastapi_app)
    await rate_limiter.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await rate_limiter.stop()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Streaming movie and TV picks curated from TMDB by OpenRouter models",
        version="1.0.0",
        lifespan=lifespan,
    )

    register_rate_limit(
        fastapi_app,
        RateLimiter(
            settings.rate_limit,
            settings.rate_limit_window_seconds,
            sweep_seconds=settings.rate_limit_sweep_seconds,
        ),
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_recommendation_service(app: FastAPI) -> RecommendationService:
    service = getattr(app.state, "recommendation_service", None)
    if not isinstance(service, RecommendationService):
        raise RuntimeError("Recommendation service not initialised")
    return service


def get_tmdb_client(app: FastAPI) -> TMDBClient:
    client = getattr(app.state, "tmdb_client", None)
    if not isinstance(client, TMDBClient):
        raise RuntimeError("TMDB client not initialised")
    return client


def get_rate_limiter(app: FastAPI) -> RateLimiter:
    limiter = getattr(app.state, "rate_limiter", None)
    if not isinstance(limiter, RateLimiter):
        raise RuntimeError("Rate limiter not initialised")
    return limiter


def register_rate_limit(fastapi_app: FastAPI, limiter: RateLimiter) -> None:
    """Throttle every ``/api`` route per client address."""

    fastapi_app.state.rate_limiter = limiter

    @fastapi_app.middleware("http")
    async def rate_limit_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if not request.url.path.startswith("/api/"):
            return await call_next(request)

        peer = request.client.host if request.client else None
        decision = limiter.check(
            _client_key(request.headers.get("x-forwarded-for"), peer)
        )
        if not decision.allowed:
            error = RateLimitedError()
            return JSONResponse(
                error.to_payload(),
                status_code=error.status_code,
                headers=decision.headers(),
            )
        response = await call_next(request)
        response.headers.update(decision.headers())
        return response


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(StreamPicksError)
    async def streampicks_error_handler(
        _: Request, exc: StreamPicksError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @fastapi_app.get("/api/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/providers")
    async def providers_endpoint(region: str | None = None) -> JSONResponse:
        tmdb = get_tmdb_client(fastapi_app)
        if not tmdb.configured:
            raise ConfigurationError("TMDB not configured")
        resolved_region = ((region or "").strip() or settings.default_region).upper()
        try:
            providers = await tmdb.region_providers(
                resolved_region, limit=settings.provider_limit
            )
        except UpstreamError as exc:
            logger.warning("Provider lookup for %s failed: %s", resolved_region, exc)
            raise UpstreamError(
                "Failed to load streaming providers",
                service=exc.service,
                upstream_status=exc.upstream_status,
            ) from exc
        return JSONResponse([provider.model_dump() for provider in providers])

    @fastapi_app.post("/api/recommend")
    async def recommend_endpoint(request: Request) -> StreamingResponse:
        service = get_recommendation_service(fastapi_app)
        service.ensure_configured()
        preferences = await _parse_preferences(request)
        return StreamingResponse(
            service.stream(preferences), media_type=STREAM_MEDIA_TYPE
        )


async def _parse_preferences(request: Request) -> PreferenceRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidInputError("Invalid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidInputError("Request body must be a JSON object")
    try:
        return PreferenceRequest.model_validate(body)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) or "body"
            for error in exc.errors()
        )
        raise InvalidInputError(f"Invalid request fields: {fields}") from exc


def _client_key(forwarded_for: str | None, peer: str | None) -> str:
    """Return the rate-limit key, preferring the first forwarded hop."""

    if forwarded_for:
        first_hop = forwarded_for.split(",", 1)[0].strip()
        if first_hop:
            return first_hop
    return peer or "unknown"


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
