"""User-facing error normalisation and FastAPI exception handlers."""

from __future__ import annotations

import asyncio
import enum
import re
from dataclasses import dataclass

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from contentforge.domain.exceptions import (
    AllCredentialsFailedError,
    ConfigurationError,
    CredentialRevokedError,
    DomainError,
    MalformedOutputError,
    MalformedRequestError,
    NetworkTransientError,
    QuotaExhaustedError,
    ServerError,
    StreamInterruptedError,
    TransientThrottleError,
)

logger = structlog.get_logger(__name__)


class ErrorCategory(str, enum.Enum):
    QUOTA = "quota"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    INVALID_CREDENTIAL = "invalid_credential"
    SERVER = "server"
    MALFORMED_OUTPUT = "malformed_output"
    UNKNOWN = "unknown"


MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.QUOTA: (
        "Daily Gemini quota exhausted. "
        "1) Wait until quota resets (midnight Pacific). "
        "2) Create keys from different Google Cloud projects. "
        "3) Enable a paid plan on ai.google.dev."
    ),
    ErrorCategory.RATE_LIMITED: "Rate limit exceeded. Wait 60 seconds and retry.",
    ErrorCategory.NETWORK: "Connection timeout or network error. Check your connection and retry.",
    ErrorCategory.INVALID_CREDENTIAL: "Invalid API key. Check GEMINI_API_KEYS in your environment.",
    ErrorCategory.SERVER: "Temporary AI server error. Retry shortly.",
    ErrorCategory.MALFORMED_OUTPUT: "The AI returned an unreadable response. Retry the step.",
}

_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.QUOTA: 429,
    ErrorCategory.RATE_LIMITED: 503,
    ErrorCategory.NETWORK: 503,
    ErrorCategory.INVALID_CREDENTIAL: 502,
    ErrorCategory.SERVER: 503,
    ErrorCategory.MALFORMED_OUTPUT: 502,
    ErrorCategory.UNKNOWN: 500,
}

_HTTP_500_RE = re.compile(r"\b50\d\b")


@dataclass(frozen=True)
class UserFacingError:
    category: ErrorCategory
    message: str

    @property
    def status_code(self) -> int:
        return _STATUS[self.category]


def _categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, AllCredentialsFailedError) and exc.last_error is not None:
        exc = exc.last_error
    if isinstance(exc, StreamInterruptedError) and exc.__cause__ is not None:
        exc = exc.__cause__

    if isinstance(exc, QuotaExhaustedError):
        return ErrorCategory.QUOTA
    if isinstance(exc, TransientThrottleError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(exc, CredentialRevokedError):
        return ErrorCategory.INVALID_CREDENTIAL
    if isinstance(exc, (NetworkTransientError, asyncio.TimeoutError, httpx.TransportError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, ServerError):
        return ErrorCategory.SERVER
    if isinstance(exc, MalformedOutputError):
        return ErrorCategory.MALFORMED_OUTPUT

    # Untyped errors: fall back to the message text.
    raw = str(exc)
    lowered = raw.lower()
    if "429" in raw or "RESOURCE_EXHAUSTED" in raw or "quota" in lowered:
        if "exceeded your current quota" in lowered or "billing" in lowered:
            return ErrorCategory.QUOTA
        return ErrorCategory.RATE_LIMITED
    if "timeout" in lowered or "fetch failed" in lowered or "econnrefused" in lowered:
        return ErrorCategory.NETWORK
    if "API key not valid" in raw or "API_KEY_INVALID" in raw:
        return ErrorCategory.INVALID_CREDENTIAL
    if "INTERNAL" in raw or _HTTP_500_RE.search(raw):
        return ErrorCategory.SERVER
    return ErrorCategory.UNKNOWN


def friendly_error(exc: BaseException) -> UserFacingError:
    """Turn any exception into an actionable message for the pipeline UI."""
    category = _categorize(exc)
    if category is ErrorCategory.UNKNOWN:
        message = exc.message if isinstance(exc, DomainError) else "An unexpected error occurred"
        return UserFacingError(category, message)
    return UserFacingError(category, MESSAGES[category])


def register_exception_handlers(app: FastAPI) -> None:
    """Register all domain→HTTP exception mappings."""

    def _respond(exc: DomainError, *, status_code: int | None = None) -> ORJSONResponse:
        error = friendly_error(exc)
        return ORJSONResponse(
            status_code=status_code or error.status_code,
            content={"code": exc.code, "category": error.category.value, "message": error.message},
        )

    @app.exception_handler(QuotaExhaustedError)
    async def handle_quota(request: Request, exc: QuotaExhaustedError) -> ORJSONResponse:
        logger.warning("quota_exhausted_http", pool_wide=exc.pool_wide)
        return _respond(exc)

    @app.exception_handler(AllCredentialsFailedError)
    async def handle_all_failed(request: Request, exc: AllCredentialsFailedError) -> ORJSONResponse:
        logger.error("all_credentials_failed_http", attempts=len(exc.errors), error=exc.message)
        return _respond(exc, status_code=503)

    @app.exception_handler(MalformedRequestError)
    async def handle_bad_request(request: Request, exc: MalformedRequestError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=400,
            content={"code": exc.code, "category": ErrorCategory.UNKNOWN.value, "message": exc.message},
        )

    @app.exception_handler(MalformedOutputError)
    async def handle_malformed_output(request: Request, exc: MalformedOutputError) -> ORJSONResponse:
        logger.error("malformed_output_http", raw_preview=exc.raw[:200])
        return _respond(exc)

    @app.exception_handler(ConfigurationError)
    async def handle_configuration(request: Request, exc: ConfigurationError) -> ORJSONResponse:
        logger.error("configuration_error_http", message=exc.message)
        return ORJSONResponse(
            status_code=500,
            content={"code": exc.code, "category": ErrorCategory.UNKNOWN.value, "message": exc.message},
        )

    @app.exception_handler(DomainError)
    async def handle_domain(request: Request, exc: DomainError) -> ORJSONResponse:
        logger.error("domain_error_http", code=exc.code, message=exc.message)
        return _respond(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "category": ErrorCategory.UNKNOWN.value,
                "message": "An unexpected error occurred",
            },
        )
