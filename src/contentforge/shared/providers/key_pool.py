"""Credential pool: round-robin selection, health, and cooldown for API keys.

Each credential carries its own cooldown/exhaustion/dead flags and usage
counters.  The pool is process-wide shared state without a lock: every
method here is synchronous, so on the single-threaded event loop a cursor
read-and-advance can never interleave with another task.  No ``await`` may
be introduced between reading and writing pool state.
"""

from __future__ import annotations

import time
from typing import Callable, Sequence

import structlog

from contentforge.domain.exceptions import ConfigurationError
from contentforge.shared.observability.metrics import CREDENTIAL_PENALTIES_TOTAL, CREDENTIALS_ALIVE
from contentforge.shared.providers.cooldown import escalating_cooldown
from contentforge.shared.providers.types import Credential, CredentialStats, PoolStats

logger = structlog.get_logger(__name__)

DEFAULT_COOLDOWN_BASE_S = 60.0
DEFAULT_COOLDOWN_CAP_MULTIPLIER = 5.0
DEFAULT_DAILY_EXHAUSTION_S = 3600.0


class CredentialPool:
    """Manages a fixed pool of API credentials for one backend."""

    def __init__(
        self,
        secrets: Sequence[str],
        *,
        cooldown_base_s: float = DEFAULT_COOLDOWN_BASE_S,
        cooldown_cap_multiplier: float = DEFAULT_COOLDOWN_CAP_MULTIPLIER,
        daily_exhaustion_s: float = DEFAULT_DAILY_EXHAUSTION_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        unique = list(dict.fromkeys(s.strip() for s in secrets if s and s.strip()))
        if not unique:
            raise ConfigurationError(
                "No Gemini API keys configured. Set GEMINI_API_KEYS or GEMINI_API_KEY."
            )

        self._credentials = [Credential(secret=s) for s in unique]
        self._next_index = 0
        self._cooldown_base = cooldown_base_s
        self._cooldown_cap = cooldown_cap_multiplier
        self._daily_exhaustion = daily_exhaustion_s
        self._clock = clock

        CREDENTIALS_ALIVE.set(len(self._credentials))
        logger.info("key_pool_initialized", size=len(self._credentials))

    # ── Selection ────────────────────────────────────────────
    def acquire(self) -> tuple[Credential, int]:
        """Return the next usable credential and its index.

        Never raises.  Falls back to the soonest-available credential when
        all are cooling, and to index 0 when every credential is dead or
        daily-exhausted (callers check :meth:`all_exhausted` first).
        """
        now = self._clock()
        total = len(self._credentials)

        for offset in range(total):
            idx = (self._next_index + offset) % total
            cred = self._credentials[idx]
            if not cred.selectable:
                continue
            if cred.cooldown_until <= now:
                return self._take(idx, now)

        available = [i for i, c in enumerate(self._credentials) if c.selectable]
        if not available:
            logger.warning("key_pool_all_exhausted", size=total)
            return self._take(0, now)

        soonest = min(available, key=lambda i: self._credentials[i].cooldown_until)
        logger.warning(
            "key_pool_all_cooling",
            available=len(available),
            shortest_wait_s=round(max(0.0, self._credentials[soonest].cooldown_until - now), 3),
        )
        return self._take(soonest, now)

    def _take(self, idx: int, now: float) -> tuple[Credential, int]:
        cred = self._credentials[idx]
        cred.call_count += 1
        cred.last_used_at = now
        self._next_index = (idx + 1) % len(self._credentials)
        return cred, idx

    # ── Outcome recording ────────────────────────────────────
    def penalize(self, index: int, *, quota_exhausted: bool = False) -> None:
        """Record a throttling response for *index*."""
        if not 0 <= index < len(self._credentials):
            return
        cred = self._credentials[index]
        cred.consecutive_failures += 1
        cred.failure_count += 1
        cred.throttle_count += 1
        now = self._clock()

        if quota_exhausted:
            cred.daily_exhausted = True
            cred.cooldown_until = now + self._daily_exhaustion
            CREDENTIAL_PENALTIES_TOTAL.labels(kind="quota").inc()
            logger.warning("credential_daily_quota_exhausted", key_idx=index, key_prefix=cred.key_prefix)
            return

        cooldown = escalating_cooldown(
            cred.consecutive_failures,
            base_seconds=self._cooldown_base,
            cap_multiplier=self._cooldown_cap,
        )
        cred.cooldown_until = now + cooldown
        CREDENTIAL_PENALTIES_TOTAL.labels(kind="throttle").inc()
        logger.warning(
            "credential_cooldown",
            key_idx=index,
            consecutive=cred.consecutive_failures,
            cooldown_s=cooldown,
        )

    def record_failure(self, index: int) -> None:
        """Count a non-throttle failure without touching cooldown state."""
        if 0 <= index < len(self._credentials):
            self._credentials[index].failure_count += 1

    def mark_dead(self, index: int) -> None:
        """Permanently exclude *index* (revoked / forbidden / leaked key)."""
        if not 0 <= index < len(self._credentials):
            return
        cred = self._credentials[index]
        cred.dead = True
        cred.failure_count += 1
        CREDENTIAL_PENALTIES_TOTAL.labels(kind="revoked").inc()
        CREDENTIALS_ALIVE.set(self.alive_count)
        logger.error(
            "credential_permanently_disabled",
            key_idx=index,
            key_prefix=cred.key_prefix,
            remaining=self.alive_count,
        )

    def reward(self, index: int) -> None:
        """Record success and reset the escalation."""
        if 0 <= index < len(self._credentials):
            cred = self._credentials[index]
            cred.consecutive_failures = 0
            cred.success_count += 1

    def reset_daily_exhaustion(self) -> None:
        """Clear exhaustion, escalation, and cooldown for every credential. Dead stays dead."""
        for cred in self._credentials:
            cred.daily_exhausted = False
            cred.consecutive_failures = 0
            cred.cooldown_until = 0.0
        logger.info("key_pool_daily_reset", size=len(self._credentials), alive=self.alive_count)

    # ── Queries ──────────────────────────────────────────────
    def all_exhausted(self) -> bool:
        return all(not c.selectable for c in self._credentials)

    @property
    def alive_count(self) -> int:
        return sum(1 for c in self._credentials if not c.dead)

    @property
    def size(self) -> int:
        return len(self._credentials)

    def credential(self, index: int) -> Credential:
        return self._credentials[index]

    def cooldown_remaining(self, index: int) -> float:
        if not 0 <= index < len(self._credentials):
            return 0.0
        return max(0.0, self._credentials[index].cooldown_until - self._clock())

    def now(self) -> float:
        return self._clock()

    def stats(self) -> PoolStats:
        now = self._clock()
        keys = [
            CredentialStats(
                index=i,
                key_prefix=c.key_prefix,
                call_count=c.call_count,
                success_count=c.success_count,
                failure_count=c.failure_count,
                throttle_count=c.throttle_count,
                consecutive_failures=c.consecutive_failures,
                is_cooling=c.cooldown_until > now,
                cooldown_remaining_s=round(max(0.0, c.cooldown_until - now), 3),
                dead=c.dead,
                daily_exhausted=c.daily_exhausted,
                health_pct=round(c.success_count / c.call_count * 100) if c.call_count else 100,
            )
            for i, c in enumerate(self._credentials)
        ]
        return PoolStats(
            pool_size=len(keys),
            alive_count=self.alive_count,
            total_calls=sum(k.call_count for k in keys),
            total_errors=sum(k.failure_count for k in keys),
            active_cooling=sum(1 for k in keys if k.is_cooling),
            daily_exhausted=sum(1 for k in keys if k.daily_exhausted),
            all_exhausted=self.all_exhausted(),
            keys=keys,
        )
