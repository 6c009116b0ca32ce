"""FastAPI application entry-point.

Assembles routers, middleware, exception handlers, and lifecycle hooks.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from contentforge import dependencies
from contentforge.adapters.inbound.rest.routers import ai_router, health_router, key_pool_router
from contentforge.config import Settings, get_settings
from contentforge.shared.errors import register_exception_handlers
from contentforge.shared.middleware import AccessLogMiddleware, RequestIdMiddleware
from contentforge.shared.observability import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle: startup & shutdown hooks."""
    settings: Settings = app.state.settings
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.is_production,
    )
    credentials = settings.credential_list()
    logger.info(
        "application_starting",
        env=settings.app_env.value,
        model=settings.gemini_model,
        credentials=len(credentials),
    )

    if not credentials:
        logger.error("no_credentials_configured", hint="set GEMINI_API_KEYS or GEMINI_API_KEY")
    elif settings.daily_reset_enabled:
        dependencies.get_scheduler(settings).start()

    yield

    await dependencies.shutdown()
    logger.info("application_shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory: creates a fully configured FastAPI instance."""
    settings = settings or get_settings()

    app = FastAPI(
        title="ContentForge AI Gateway",
        description=(
            "Credential-pooled access to the Gemini API for the content pipeline: "
            "round-robin key rotation, cooldowns, retries, streaming, and key-pool diagnostics."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.dependency_overrides[dependencies.get_cached_settings] = lambda: settings

    # ── Middleware (first added = innermost) ─────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Exception handlers ───────────────────────────────────
    register_exception_handlers(app)

    # ── REST routers (versioned) ─────────────────────────────
    api_v1 = "/api/v1"
    app.include_router(health_router, prefix=api_v1)
    app.include_router(key_pool_router, prefix=api_v1)
    app.include_router(ai_router, prefix=api_v1)

    return app


# Uvicorn entry-point
app = create_app()
