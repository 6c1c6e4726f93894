"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Single source of "now" for the polling pipeline.

Rate-limit windows, poll statistics, cron scheduling and alert
timestamps all read time through an injected clock, so tests
can pin and advance it.

All values are timezone-aware UTC. Localization happens only
when a message is rendered.

============================================================
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class ClockProtocol(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(ClockProtocol):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Manually driven clock for tests.

    Time only moves through advance() and set_time().
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set_time(self, moment: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(moment)

    def advance(self, **delta: float) -> datetime:
        """Move forward by timedelta keyword arguments (minutes=5)."""
        with self._lock:
            self._now += timedelta(**delta)
            return self._now


def ensure_utc(dt: datetime) -> datetime:
    """
    Naive values are taken as UTC.

    SQLite returns naive datetimes, so anything read back from
    the database passes through here before comparison.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "to_iso8601",
]
