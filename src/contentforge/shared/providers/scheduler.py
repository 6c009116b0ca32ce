"""Daily reset of quota-exhausted credentials.

Gemini free-tier quotas roll over at midnight Pacific time.  The scheduler
sleeps until the next configured wall-clock hour and then calls
``CredentialPool.reset_daily_exhaustion``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

import structlog

from contentforge.shared.providers.key_pool import CredentialPool

logger = structlog.get_logger(__name__)


def seconds_until_next_reset(now: datetime, *, hour: int = 0, min_gap_s: float = 60.0) -> float:
    """Seconds from the aware datetime *now* to the next ``hour:00`` in its timezone.

    A reset closer than *min_gap_s* is skipped in favour of the following
    day, so a sleep that wakes a little early cannot fire the reset twice.
    """
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    # Compare in UTC so DST transitions are measured correctly.
    while target.timestamp() - now.timestamp() < min_gap_s:
        target = (target + timedelta(days=1)).replace(hour=hour)
    return target.timestamp() - now.timestamp()


class DailyResetScheduler:
    """Background task that resets daily exhaustion once per day."""

    def __init__(
        self,
        pool: CredentialPool,
        *,
        timezone: str = "America/Los_Angeles",
        hour: int = 0,
        now: Callable[[ZoneInfo], datetime] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._tz = ZoneInfo(timezone)
        self._hour = hour
        self._now = now or (lambda tz: datetime.now(tz))
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="daily-key-reset")
        logger.info("daily_reset_scheduler_started", timezone=str(self._tz), hour=self._hour)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("daily_reset_scheduler_stopped")

    async def run_once(self) -> None:
        """Sleep until the next reset time, then reset the pool."""
        delay = seconds_until_next_reset(self._now(self._tz), hour=self._hour)
        logger.debug("daily_reset_scheduled", in_seconds=round(delay))
        await self._sleep(delay)
        self._pool.reset_daily_exhaustion()
        logger.info("daily_reset_applied", alive=self._pool.alive_count)

    async def _run(self) -> None:
        while True:
            await self.run_once()
