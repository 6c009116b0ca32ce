"""Core types for the credential pool and call-dispatch layer."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from typing import Any


class _Missing:
    """Sentinel for "no default supplied" (``None`` is a legitimate default)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class CallOutcome(str, enum.Enum):
    """How a single backend attempt ended."""

    SUCCESS = "success"
    THROTTLED = "throttled"
    QUOTA_EXHAUSTED = "quota_exhausted"
    REVOKED = "revoked"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    MALFORMED_OUTPUT = "malformed_output"
    MALFORMED_REQUEST = "malformed_request"
    STREAM_INTERRUPTED = "stream_interrupted"


@dataclass
class Credential:
    """Mutable state for one API credential slot.

    Attributes:
        secret:               The API key. Never logged; use ``key_prefix``.
        cooldown_until:       Clock value before which the slot is not selected.
        daily_exhausted:      Set on a quota-exhaustion response; cleared by daily reset.
        dead:                 Permanently excluded (unauthorized / forbidden / leaked).
        consecutive_failures: Drives the escalating cooldown; zeroed on success.
    """

    secret: str
    cooldown_until: float = 0.0
    daily_exhausted: bool = False
    dead: bool = False
    consecutive_failures: int = 0

    # Usage telemetry (cumulative)
    call_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    throttle_count: int = 0
    last_used_at: float = 0.0
    last_call_at: float | None = None

    @property
    def key_prefix(self) -> str:
        return f"{self.secret[:10]}..."

    @property
    def selectable(self) -> bool:
        return not (self.dead or self.daily_exhausted)

    def __repr__(self) -> str:
        return (
            f"Credential(key_prefix={self.key_prefix!r}, dead={self.dead}, "
            f"daily_exhausted={self.daily_exhausted}, cooldown_until={self.cooldown_until})"
        )


@dataclass(frozen=True)
class CallRequest:
    """One logical request to the generative backend.

    Immutable; the dispatcher derives modified copies (``dataclasses.replace``)
    when it switches to the fallback model.
    """

    instruction: str
    content: str
    temperature: float | None = None
    max_output_size: int = 8192
    json_mode: bool = False
    grounding: bool = False
    stream: bool = False
    model: str | None = None
    expect: type | None = None
    default: Any = MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    def strict_json(self, model: str | None) -> CallRequest:
        """Copy used after a structured-output failure: low temperature, explicit instruction."""
        return dataclasses.replace(
            self,
            model=model or self.model,
            temperature=0.1,
            content=(
                self.content
                + "\n\nCRITICAL: Return ONLY a valid JSON object. No text before or after. "
                "No markdown. Start with { and end with }."
            ),
        )


@dataclass
class CredentialStats:
    """Read-only snapshot of one credential, safe to expose to operators."""

    index: int
    key_prefix: str
    call_count: int
    success_count: int
    failure_count: int
    throttle_count: int
    consecutive_failures: int
    is_cooling: bool
    cooldown_remaining_s: float
    dead: bool
    daily_exhausted: bool
    health_pct: int


@dataclass
class PoolStats:
    """Aggregate pool snapshot."""

    pool_size: int
    alive_count: int
    total_calls: int
    total_errors: int
    active_cooling: int
    daily_exhausted: int
    all_exhausted: bool
    keys: list[CredentialStats] = field(default_factory=list)


@dataclass
class CallRecord:
    """One attempt as kept in the dispatcher's recent-call ring buffer."""

    timestamp: float
    credential_index: int
    outcome: CallOutcome
    latency_ms: float
    streaming: bool = False
    error: str | None = None
