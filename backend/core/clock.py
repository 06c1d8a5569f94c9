"""Clock abstraction for the scheduler loop and time-based blocks.

Everything in the engine that waits or reads the time goes through a
Clock, so delays and scheduled starts can be simulated in tests.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

from core.utils import utc_now


class Clock:
    """Wall-clock time backed by asyncio."""

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """Deterministic clock: sleeping advances virtual time instantly.

    ``sleep`` moves the clock forward and yields once to the event loop,
    so a scheduler tick or a delay block never blocks on real time.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        if seconds > 0:
            self._now += timedelta(seconds=seconds)
            self._elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)
