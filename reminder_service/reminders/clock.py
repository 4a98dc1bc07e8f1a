from datetime import datetime, timedelta
from typing import Protocol
import threading

from reminder_service.utils.timezone import to_utc_aware, utc_now


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return utc_now()


class FrozenClock:
    """Manually advanced clock for deterministic runs"""

    def __init__(self, start: datetime):
        self._now = to_utc_aware(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = to_utc_aware(value)

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._now = self._now + delta
            return self._now
