"""Pure timing policies: escalating cooldown and jittered backoff.

Kept free of clocks and state so they can be tested in isolation.
"""

from __future__ import annotations

import random


def escalating_cooldown(
    consecutive_failures: int,
    *,
    base_seconds: float = 60.0,
    cap_multiplier: float = 5.0,
) -> float:
    """Cooldown after the *consecutive_failures*-th transient throttle in a row.

    ``base × min(2^(k−1), cap)``: 60s, 120s, 240s, then flat at 300s with the
    default policy.
    """
    if consecutive_failures < 1:
        return 0.0
    multiplier = min(2 ** (consecutive_failures - 1), cap_multiplier)
    return base_seconds * multiplier


def backoff_with_jitter(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    jitter_ratio: float = 0.5,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff plus 0..``jitter_ratio`` proportional jitter, capped."""
    exponential = base_seconds * (2 ** attempt)
    jitter = (rng or random).random() * exponential * jitter_ratio
    return min(exponential + jitter, max_seconds)
