"""Dependency injection container: wires the backend, pool, and dispatcher.

FastAPI's ``Depends()`` system uses these factories to inject the shared
singletons into route handlers.  There is exactly one credential pool per
process; every request shares it.
"""

from __future__ import annotations

import hmac
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from contentforge.adapters.outbound.llm import GeminiBackend
from contentforge.application.services import AIClient
from contentforge.config import Settings, get_settings
from contentforge.domain.exceptions import ConfigurationError
from contentforge.shared.providers import (
    CallDispatcher,
    CredentialPool,
    DailyResetScheduler,
    RateGate,
    StructuredExtractor,
)


# ── Settings ─────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_cached_settings() -> Settings:
    return get_settings()


# ── Singletons ───────────────────────────────────────────────
_backend: GeminiBackend | None = None
_pool: CredentialPool | None = None
_dispatcher: CallDispatcher | None = None
_scheduler: DailyResetScheduler | None = None


def get_backend(settings: Settings | None = None) -> GeminiBackend:
    global _backend
    if _backend is None:
        s = settings or get_cached_settings()
        _backend = GeminiBackend(model=s.gemini_model, base_url=s.gemini_base_url)
    return _backend


def get_pool(settings: Settings | None = None) -> CredentialPool:
    """Create or return the process-wide credential pool.

    Raises ``ConfigurationError`` when no API key is configured.
    """
    global _pool
    if _pool is None:
        s = settings or get_cached_settings()
        _pool = CredentialPool(
            s.credential_list(),
            cooldown_base_s=s.key_cooldown_base_seconds,
            cooldown_cap_multiplier=s.key_cooldown_cap_multiplier,
            daily_exhaustion_s=s.key_daily_exhaustion_seconds,
        )
    return _pool


def build_dispatcher(
    settings: Settings,
    pool: CredentialPool,
    backend: GeminiBackend,
) -> CallDispatcher:
    return CallDispatcher(
        pool,
        backend,
        gate=RateGate(settings.rate_gate_steps()),
        extractor=StructuredExtractor(),
        max_attempts_cap=settings.dispatch_max_attempts_cap,
        max_cooldown_wait_s=settings.dispatch_max_cooldown_wait_seconds,
        throttle_backoff=(settings.dispatch_throttle_backoff_base, settings.dispatch_throttle_backoff_max),
        server_backoff=(settings.dispatch_server_backoff_base, settings.dispatch_server_backoff_max),
        timeout_base_s=settings.generation_timeout_seconds,
        timeout_max_s=settings.generation_timeout_max_seconds,
        stream_idle_timeout_s=settings.stream_idle_timeout_seconds,
        fallback_model=settings.gemini_fallback_model,
        history_size=settings.dispatch_history_size,
    )


def get_dispatcher(settings: Settings | None = None) -> CallDispatcher:
    global _dispatcher
    if _dispatcher is None:
        s = settings or get_cached_settings()
        _dispatcher = build_dispatcher(s, get_pool(s), get_backend(s))
    return _dispatcher


def get_scheduler(settings: Settings | None = None) -> DailyResetScheduler:
    global _scheduler
    if _scheduler is None:
        s = settings or get_cached_settings()
        _scheduler = DailyResetScheduler(
            get_pool(s),
            timezone=s.daily_reset_timezone,
            hour=s.daily_reset_hour,
        )
    return _scheduler


async def shutdown() -> None:
    """Stop background work and release network resources."""
    global _backend, _pool, _dispatcher, _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
    if _backend is not None:
        await _backend.close()
    _backend = _pool = _dispatcher = _scheduler = None


# ── Route dependencies ───────────────────────────────────────
def provide_dispatcher(settings: Settings = Depends(get_cached_settings)) -> CallDispatcher:
    return get_dispatcher(settings)


def provide_optional_dispatcher(
    settings: Settings = Depends(get_cached_settings),
) -> CallDispatcher | None:
    """Like :func:`provide_dispatcher` but ``None`` when no API key is configured."""
    try:
        return get_dispatcher(settings)
    except ConfigurationError:
        return None


def provide_ai_client(
    dispatcher: CallDispatcher = Depends(provide_dispatcher),
    settings: Settings = Depends(get_cached_settings),
) -> AIClient:
    return AIClient(
        dispatcher,
        model=settings.gemini_model,
        batch_size=settings.batch_size,
        batch_delay_s=settings.batch_delay_seconds,
    )


async def require_admin(
    authorization: str | None = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_cached_settings),
) -> None:
    """Bearer check for administrative routes; open when no admin secret is configured."""
    if not settings.admin_secret:
        return
    expected = f"Bearer {settings.admin_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
