"""Data Transfer Objects: Pydantic models for API boundaries."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from contentforge.shared.providers.types import CallRecord, PoolStats


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    category: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    pool_size: int = 0
    alive: int = 0
    all_exhausted: bool = False


# ═══════════════════════════════════════════════════════════════
#  AI calls
# ═══════════════════════════════════════════════════════════════
class GenerateRequest(BaseModel):
    instruction: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_output_size: int = Field(8192, ge=1, le=65536)
    json_mode: bool = True
    grounding: bool = False
    expect: Literal["object", "array"] | None = None
    default: Any = None
    use_default: bool = False

    def expect_type(self) -> type | None:
        return {"object": dict, "array": list}.get(self.expect or "")


class GenerateResponse(BaseModel):
    text: str
    data: Any = None


class StreamRequest(BaseModel):
    instruction: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_output_size: int = Field(32768, ge=1, le=65536)
    grounding: bool = False


# ═══════════════════════════════════════════════════════════════
#  Key pool (operator)
# ═══════════════════════════════════════════════════════════════
class CredentialStatsOut(BaseModel):
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


class CallRecordOut(BaseModel):
    timestamp: float
    credential_index: int
    outcome: str
    latency_ms: float
    streaming: bool
    error: str | None = None

    @classmethod
    def from_record(cls, record: CallRecord) -> CallRecordOut:
        return cls(
            timestamp=record.timestamp,
            credential_index=record.credential_index,
            outcome=record.outcome.value,
            latency_ms=record.latency_ms,
            streaming=record.streaming,
            error=record.error,
        )


class PoolStatsResponse(BaseModel):
    pool_size: int
    alive_count: int
    total_calls: int
    total_errors: int
    active_cooling: int
    daily_exhausted: int
    all_exhausted: bool
    keys: list[CredentialStatsOut]
    recent_calls: list[CallRecordOut] = Field(default_factory=list)

    @classmethod
    def build(cls, stats: PoolStats, records: list[CallRecord]) -> PoolStatsResponse:
        return cls(
            pool_size=stats.pool_size,
            alive_count=stats.alive_count,
            total_calls=stats.total_calls,
            total_errors=stats.total_errors,
            active_cooling=stats.active_cooling,
            daily_exhausted=stats.daily_exhausted,
            all_exhausted=stats.all_exhausted,
            keys=[CredentialStatsOut(**vars(k)) for k in stats.keys],
            recent_calls=[CallRecordOut.from_record(r) for r in records],
        )


class ResetResponse(BaseModel):
    status: str = "reset"
    alive_count: int
    pool_size: int
