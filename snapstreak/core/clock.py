"""Injectable time sources and caller deadlines (UTC only)."""

from __future__ import annotations

import threading
import time
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from snapstreak.core.errors import TimeoutError


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually driven clock for tests and replays."""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, **delta) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now


class Deadline:
    """Caller-supplied deadline measured on the monotonic clock."""

    def __init__(self, expires_at: float):
        self._expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, operation: str) -> None:
        if self.expired():
            raise TimeoutError(f"{operation} exceeded its deadline")


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)
