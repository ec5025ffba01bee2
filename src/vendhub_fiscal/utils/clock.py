"""
Injectable time source

Services never call ``datetime.now()`` directly; they receive a Clock so
retry schedules, leases and shift timestamps are deterministic under test.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract clock interface"""

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time as a timezone-aware UTC datetime"""
        ...


class SystemClock(Clock):
    """Production clock that returns actual system time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Test clock with controlled time

    ``now()`` returns the same value until ``advance()`` or ``set_time()``
    is called.
    """

    def __init__(self, fixed_time: Optional[datetime] = None) -> None:
        self._time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if self._time.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time"""
        with self._lock:
            self._time = time

    def advance(self, seconds: float = 1) -> datetime:
        """Advance the clock and return the new time"""
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds)
            return self._time
