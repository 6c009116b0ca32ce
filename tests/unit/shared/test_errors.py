"""Tests for user-facing error normalisation."""

from __future__ import annotations

import asyncio

import pytest

from contentforge.domain.exceptions import (
    AllCredentialsFailedError,
    CredentialRevokedError,
    DomainError,
    MalformedOutputError,
    NetworkTransientError,
    QuotaExhaustedError,
    ServerError,
    StreamInterruptedError,
    TransientThrottleError,
)
from contentforge.shared.errors import MESSAGES, ErrorCategory, friendly_error


class TestTypedErrors:
    @pytest.mark.parametrize(
        "exc, category",
        [
            (QuotaExhaustedError("daily quota", pool_wide=True), ErrorCategory.QUOTA),
            (TransientThrottleError("slow down"), ErrorCategory.RATE_LIMITED),
            (CredentialRevokedError("leaked"), ErrorCategory.INVALID_CREDENTIAL),
            (NetworkTransientError("timed out"), ErrorCategory.NETWORK),
            (asyncio.TimeoutError(), ErrorCategory.NETWORK),
            (ServerError("boom", status_code=503), ErrorCategory.SERVER),
            (MalformedOutputError("bad json"), ErrorCategory.MALFORMED_OUTPUT),
        ],
    )
    def test_category_and_message(self, exc: BaseException, category: ErrorCategory) -> None:
        error = friendly_error(exc)
        assert error.category is category
        assert error.message == MESSAGES[category]

    def test_quota_maps_to_429(self) -> None:
        assert friendly_error(QuotaExhaustedError("x")).status_code == 429

    def test_quota_message_is_actionable(self) -> None:
        message = friendly_error(QuotaExhaustedError("x")).message
        assert "midnight Pacific" in message
        assert "different Google Cloud projects" in message


class TestWrappedErrors:
    def test_all_failed_uses_last_error(self) -> None:
        exc = AllCredentialsFailedError([ServerError("a"), CredentialRevokedError("b")])
        assert friendly_error(exc).category is ErrorCategory.INVALID_CREDENTIAL

    def test_all_failed_without_errors_is_unknown(self) -> None:
        error = friendly_error(AllCredentialsFailedError([]))
        assert error.category is ErrorCategory.UNKNOWN
        assert "0 attempt" in error.message

    def test_stream_interruption_uses_cause(self) -> None:
        exc = StreamInterruptedError("cut", chunks_delivered=3)
        exc.__cause__ = TransientThrottleError("429")
        assert friendly_error(exc).category is ErrorCategory.RATE_LIMITED


class TestUntypedErrors:
    @pytest.mark.parametrize(
        "text, category",
        [
            ("You exceeded your current quota, check billing", ErrorCategory.QUOTA),
            ("HTTP 429 Too Many Requests", ErrorCategory.RATE_LIMITED),
            ("RESOURCE_EXHAUSTED", ErrorCategory.RATE_LIMITED),
            ("Request timeout", ErrorCategory.NETWORK),
            ("connect ECONNREFUSED 127.0.0.1", ErrorCategory.NETWORK),
            ("API key not valid. Please pass a valid API key.", ErrorCategory.INVALID_CREDENTIAL),
            ("upstream returned 502", ErrorCategory.SERVER),
            ("INTERNAL", ErrorCategory.SERVER),
        ],
    )
    def test_message_fallback(self, text: str, category: ErrorCategory) -> None:
        assert friendly_error(RuntimeError(text)).category is category

    def test_unknown_plain_exception_hides_detail(self) -> None:
        error = friendly_error(RuntimeError("secret internals"))
        assert error.category is ErrorCategory.UNKNOWN
        assert error.message == "An unexpected error occurred"
        assert error.status_code == 500

    def test_unknown_domain_error_keeps_message(self) -> None:
        error = friendly_error(DomainError("Outline step needs at least one competitor URL"))
        assert error.message == "Outline step needs at least one competitor URL"
