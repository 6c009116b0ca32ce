"""Health, key-pool operator, and AI generation REST routers."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import ORJSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from contentforge.application.dtos import (
    ErrorResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    PoolStatsResponse,
    ResetResponse,
    StreamRequest,
)
from contentforge.application.services import AIClient
from contentforge.config import Settings
from contentforge.dependencies import (
    get_cached_settings,
    provide_ai_client,
    provide_dispatcher,
    provide_optional_dispatcher,
    require_admin,
)
from contentforge.domain.exceptions import DomainError
from contentforge.shared.errors import friendly_error
from contentforge.shared.providers import MISSING, CallDispatcher

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_cached_settings),
    dispatcher: CallDispatcher | None = Depends(provide_optional_dispatcher),
) -> ORJSONResponse:
    body = HealthResponse(environment=settings.app_env.value)
    if dispatcher is None:
        body.status = "unconfigured"
        return ORJSONResponse(content=body.model_dump(), status_code=503)

    pool = dispatcher.pool
    body.pool_size = pool.size
    body.alive = pool.alive_count
    body.all_exhausted = pool.all_exhausted()
    if body.all_exhausted:
        body.status = "degraded"
    return ORJSONResponse(content=body.model_dump(), status_code=200)


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ═══════════════════════════════════════════════════════════════
#  Key pool (operator)
# ═══════════════════════════════════════════════════════════════
key_pool_router = APIRouter(prefix="/key-pool", tags=["Key Pool"])


@key_pool_router.get("/stats", response_model=PoolStatsResponse)
async def key_pool_stats(
    recent: int = Query(20, ge=0, le=200),
    dispatcher: CallDispatcher = Depends(provide_dispatcher),
) -> PoolStatsResponse:
    """Per-key health and the most recent call attempts. Secrets are shown as prefixes only."""
    return PoolStatsResponse.build(dispatcher.pool.stats(), dispatcher.recent_calls(recent))


@key_pool_router.post("/reset", response_model=ResetResponse, dependencies=[Depends(require_admin)])
async def reset_key_pool(
    dispatcher: CallDispatcher = Depends(provide_dispatcher),
) -> ResetResponse:
    """Clear daily exhaustion and cooldowns. Disabled keys stay disabled."""
    pool = dispatcher.pool
    pool.reset_daily_exhaustion()
    logger.info("key_pool_reset_by_admin", alive=pool.alive_count)
    return ResetResponse(alive_count=pool.alive_count, pool_size=pool.size)


# ═══════════════════════════════════════════════════════════════
#  AI generation
# ═══════════════════════════════════════════════════════════════
ai_router = APIRouter(prefix="/ai", tags=["AI"])


@ai_router.post(
    "/generate",
    response_model=GenerateResponse,
    responses={429: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def generate(
    body: GenerateRequest,
    client: AIClient = Depends(provide_ai_client),
) -> GenerateResponse:
    text = await client.call(
        body.instruction,
        body.content,
        temperature=body.temperature,
        max_output_size=body.max_output_size,
        json_mode=body.json_mode,
        grounding=body.grounding,
        expect=body.expect_type(),
        default=body.default if body.use_default else MISSING,
    )
    return GenerateResponse(text=text, data=json.loads(text) if body.json_mode else None)


@ai_router.post("/generate/stream")
async def generate_stream(
    body: StreamRequest,
    client: AIClient = Depends(provide_ai_client),
) -> StreamingResponse:
    """Stream plain-text chunks.

    A failure after output has started cannot change the status code; the
    stream ends with a bracketed error line instead.
    """
    chunks = client.call_streaming(
        body.instruction,
        body.content,
        temperature=body.temperature,
        max_output_size=body.max_output_size,
        grounding=body.grounding,
    )
    # Pull the first chunk here so pre-stream failures map to a proper error status.
    try:
        first = await anext(chunks)
    except StopAsyncIteration:
        first = ""

    async def _body() -> AsyncIterator[str]:
        if first:
            yield first
        try:
            async for chunk in chunks:
                yield chunk
        except DomainError as exc:
            logger.warning("stream_aborted", error=exc.message, code=exc.code)
            yield f"\n\n[error: {friendly_error(exc).message}]"

    return StreamingResponse(_body(), media_type="text/plain; charset=utf-8")
