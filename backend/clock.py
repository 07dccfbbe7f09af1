"""
clock.py
────────
Time source injected into the scheduler, the dispatcher and the edit path.

SystemClock reads the wall clock in the configured zone; ManualClock only moves
when told to, so ticks can be driven deterministically.
"""

import threading
from datetime import datetime, timedelta, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    @property
    def tz(self) -> tzinfo: ...

    def now(self) -> datetime: ...


class SystemClock:
    def __init__(self, timezone: str = "UTC"):
        self._tz = ZoneInfo(timezone)

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(self._tz)


class ManualClock:
    def __init__(self, start: datetime):
        if start.tzinfo is None:
            raise ValueError("ManualClock needs a timezone-aware start instant")
        self._now  = start
        self._lock = threading.Lock()

    @property
    def tz(self) -> tzinfo:
        return self._now.tzinfo

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = instant

    def advance(self, **kwargs) -> datetime:
        """advance(minutes=30), advance(days=1); same keywords as timedelta."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
