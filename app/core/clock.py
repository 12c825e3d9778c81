"""
Wall-clock source for the coordinator.

Every liveness and staleness decision reads time through a `Clock`
instance instead of calling `datetime.now()` inline, so tests can
advance time deterministically (e.g. "31 seconds later") without
sleeping.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """System UTC clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to — used by tests and simulations."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
