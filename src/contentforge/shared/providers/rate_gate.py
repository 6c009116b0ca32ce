"""Per-credential minimum spacing between network calls.

Independent of cooldown: even a healthy credential is not hit twice within
the interval.  The interval shrinks as the number of live credentials grows
(aggregate throughput scales with the pool, per-key throughput does not).
"""

from __future__ import annotations

import math
from typing import Sequence

from contentforge.shared.providers.types import Credential

# (max alive credentials, seconds); first matching step wins.
DEFAULT_STEPS: tuple[tuple[float, float], ...] = (
    (1, 4.5),   # ~13 RPM on a single key
    (3, 2.0),
    (6, 1.0),
    (math.inf, 0.5),
)


def parse_steps(text: str) -> tuple[tuple[float, float], ...]:
    """Parse ``"1:4.5,3:2.0,6:1.0,*:0.5"`` into gate steps.

    ``*`` stands for "any larger pool".  Raises ``ValueError`` when the steps
    do not form a non-increasing interval ladder.
    """
    steps: list[tuple[float, float]] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        bound, _, seconds = part.partition(":")
        limit = math.inf if bound.strip() == "*" else float(bound)
        steps.append((limit, float(seconds)))
    steps.sort(key=lambda s: s[0])
    if not steps:
        raise ValueError("rate gate needs at least one step")
    for (_, prev), (_, cur) in zip(steps, steps[1:]):
        if cur > prev:
            raise ValueError(f"rate gate intervals must not grow with pool size: {text!r}")
    if steps[-1][0] != math.inf:
        steps.append((math.inf, steps[-1][1]))
    return tuple(steps)


class RateGate:
    """Computes how long a caller must wait before using a credential again."""

    def __init__(self, steps: Sequence[tuple[float, float]] = DEFAULT_STEPS) -> None:
        self._steps = tuple(sorted(steps, key=lambda s: s[0]))

    def min_interval_for(self, alive_count: int) -> float:
        for limit, seconds in self._steps:
            if alive_count <= limit:
                return seconds
        return self._steps[-1][1]

    def wait_time(self, credential: Credential, now: float, alive_count: int) -> float:
        if credential.last_call_at is None:
            return 0.0
        elapsed = now - credential.last_call_at
        return max(0.0, self.min_interval_for(alive_count) - elapsed)

    def mark_used(self, credential: Credential, now: float) -> None:
        """Call exactly once per network attempt, not per logical request."""
        credential.last_call_at = now

    def reserve(self, credential: Credential, now: float, alive_count: int) -> float:
        """Claim the credential's next send slot and return how long to wait for it.

        Reading the wait and recording the slot happen in one synchronous
        step, so callers that queue on the same credential get successive
        slots instead of the same one.
        """
        wait = self.wait_time(credential, now, alive_count)
        self.mark_used(credential, now + wait)
        return wait
