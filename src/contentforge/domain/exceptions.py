"""Domain-specific exception hierarchy.

All exceptions inherit from ``DomainError`` so callers can catch the entire
family in one clause while still discriminating on subclass.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for all domain-layer errors."""

    def __init__(self, message: str, *, code: str = "DOMAIN_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(DomainError):
    """The process was started without a usable configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


# ── Backend signals ──────────────────────────────────────────
class BackendError(DomainError):
    """Base for every failure reported by the generative backend.

    ``credential_index`` is filled in by the dispatcher once it knows which
    pool slot served the attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "BACKEND_ERROR",
        status_code: int | None = None,
        credential_index: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code
        self.credential_index = credential_index


class TransientThrottleError(BackendError):
    """A single credential is temporarily rate-limited (HTTP 429)."""

    def __init__(self, message: str, *, status_code: int | None = 429) -> None:
        super().__init__(message, code="RATE_LIMITED", status_code=status_code)


class QuotaExhaustedError(BackendError):
    """Daily quota used up, for one credential, or for the whole pool."""

    def __init__(
        self,
        message: str,
        *,
        pool_wide: bool = False,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, code="QUOTA_EXHAUSTED", status_code=status_code)
        self.pool_wide = pool_wide


class CredentialRevokedError(BackendError):
    """The backend permanently rejected the credential (401/403, invalid or leaked key)."""

    def __init__(self, message: str, *, status_code: int | None = 403) -> None:
        super().__init__(message, code="CREDENTIAL_REVOKED", status_code=status_code)


class MalformedRequestError(BackendError):
    """The request itself was rejected (HTTP 400). Retrying on another key will not help."""

    def __init__(self, message: str, *, status_code: int | None = 400) -> None:
        super().__init__(message, code="MALFORMED_REQUEST", status_code=status_code)


class ServerError(BackendError):
    """5xx from the backend, or a response body that could not be understood."""

    def __init__(self, message: str, *, status_code: int | None = 500) -> None:
        super().__init__(message, code="SERVER_ERROR", status_code=status_code)


class NetworkTransientError(BackendError):
    """Timeout or connection failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="NETWORK_ERROR")


# ── Call-level outcomes ──────────────────────────────────────
class MalformedOutputError(DomainError):
    """Structured output could not be recovered by any extraction strategy."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message, code="MALFORMED_OUTPUT")
        self.raw = raw[:500]


class AllCredentialsFailedError(DomainError):
    """The attempt budget ran out without a successful backend call."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        last = self.last_error
        detail = f"{type(last).__name__}: {last}" if last else "no attempts were made"
        super().__init__(
            f"All credential attempts failed after {len(self.errors)} attempt(s); last error: {detail}",
            code="ALL_CREDENTIALS_FAILED",
        )

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1] if self.errors else None


class StreamInterruptedError(DomainError):
    """A token stream failed after output had already been delivered."""

    def __init__(self, message: str, *, chunks_delivered: int) -> None:
        super().__init__(message, code="STREAM_INTERRUPTED")
        self.chunks_delivered = chunks_delivered
