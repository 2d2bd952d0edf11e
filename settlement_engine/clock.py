"""
Settlement Engine - Clock.

Every time-dependent rule (signature validity windows, heuristic
correlation windows) reads the current instant through a clock
object, so tests can pin and step time.

All instants are timezone-aware UTC.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class ClockProtocol(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def timestamp(self) -> float:
        """Unix seconds for now()."""
        return self.now().timestamp()


class SystemClock(ClockProtocol):
    """Wall-clock UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Frozen clock that only moves when told to.

    The engine runs on one event loop, so plain attribute
    access is enough.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._current = ensure_utc(initial_time or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._current

    def set_time(self, new_time: datetime) -> None:
        self._current = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **delta) -> None:
        """Step forward; extra keywords go to timedelta (minutes=, hours=, days=)."""
        self._current += timedelta(seconds=seconds, **delta)
