"""
Time helpers.

All timestamps are stored in UTC. SQLite (used by the test-suite) hands back
naive datetimes, so values read from the database go through ``as_utc`` before
being compared with aware ones.
"""
import time
from datetime import datetime, timezone
from typing import Callable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WallClockBudget:
    """
    Elapsed-time budget for one invocation.

    Uses a monotonic clock; ``clock`` is injectable for tests.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def exhausted(self) -> bool:
        return self.elapsed > self.seconds
