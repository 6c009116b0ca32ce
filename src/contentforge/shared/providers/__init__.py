"""Credential-pool resilience layer.

Round-robin key selection with cooldowns, per-key rate spacing, failure
classification and retry, and structured-output recovery for the
generative backend.
"""

from contentforge.shared.providers.types import (
    MISSING,
    CallOutcome,
    CallRecord,
    CallRequest,
    Credential,
    CredentialStats,
    PoolStats,
)
from contentforge.shared.providers.key_pool import CredentialPool
from contentforge.shared.providers.rate_gate import RateGate, parse_steps
from contentforge.shared.providers.extractor import StructuredExtractor
from contentforge.shared.providers.dispatcher import CallDispatcher
from contentforge.shared.providers.scheduler import DailyResetScheduler, seconds_until_next_reset

__all__ = [
    "MISSING",
    "CallDispatcher",
    "CallOutcome",
    "CallRecord",
    "CallRequest",
    "Credential",
    "CredentialPool",
    "CredentialStats",
    "DailyResetScheduler",
    "PoolStats",
    "RateGate",
    "StructuredExtractor",
    "parse_steps",
    "seconds_until_next_reset",
]
