"""
Clock -- injectable source of "now" for billing.

Due dates, schedule advancement, claim expiry, overdue checks, and the
scan scheduler all read time through a Clock passed in by the caller.
Nothing in the kernel or batch layers calls ``datetime.now()`` itself.

SystemClock is the production implementation (aware UTC).
DeterministicClock is for tests: it stands still until moved.  Give it an
aware UTC start when its readings are compared with stored timestamps,
which always come back aware UTC.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Constructor-injected time source."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen clock for tests; ``set_time`` / ``advance`` move it."""

    def __init__(self, start: datetime | None = None):
        self._current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = time

    def advance(self, seconds: int = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current += timedelta(days=days)
