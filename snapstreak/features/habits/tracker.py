from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import List, Optional

from snapstreak.core.clock import Clock, SystemClock
from snapstreak.core.config import settings
from snapstreak.core.errors import ValidationError
from snapstreak.features.habits.store import HabitDayStore, get_habit_day_store
from snapstreak.models.habit import HabitDay

logger = logging.getLogger("snapstreak.habits")


def count_streak(rows: List[HabitDay]) -> int:
    """Consecutive completed days, newest row first.

    The ledger only stores explicit rows, so a missing calendar day breaks
    the streak exactly like a ``completed=False`` row does.
    """
    streak = 0
    expected: Optional[date] = None
    for row in rows:
        if expected is not None and row.day != expected:
            break
        if not row.completed:
            break
        streak += 1
        expected = row.day - timedelta(days=1)
    return streak


def count_prior_misses(rows: List[HabitDay], day: date) -> int:
    """Explicit misses on the days immediately before ``day``, newest first.

    A completed day or a gap ends the run.
    """
    misses = 0
    expected = day - timedelta(days=1)
    for row in rows:
        if row.day >= day:
            continue
        if row.day != expected or row.completed:
            break
        misses += 1
        expected = row.day - timedelta(days=1)
    return misses


class HabitStreakTracker:
    """Per-user, per-habit daily completion ledger."""

    def __init__(
        self,
        store: Optional[HabitDayStore] = None,
        clock: Optional[Clock] = None,
        *,
        lookback_days: Optional[int] = None,
        miss_lookback_days: Optional[int] = None,
    ):
        self._store = store or get_habit_day_store()
        self._clock = clock or SystemClock()
        self._lookback_days = lookback_days or settings.HABIT_LOOKBACK_DAYS
        self._miss_lookback_days = miss_lookback_days or settings.MISS_LOOKBACK_DAYS

    def record_completion(self, user_id: str, habit_id: str, day: date) -> int:
        """Mark ``day`` completed (idempotent) and return the current streak."""
        self._check_editable(day)
        self._store.upsert_completion(user_id, habit_id, day)
        streak = self.current_streak(user_id, habit_id)
        logger.debug(
            "habit.completed",
            extra={"user_id": user_id, "habit_id": habit_id, "event_type": "habit.completed"},
        )
        return streak

    def record_miss(self, user_id: str, habit_id: str, day: date) -> int:
        """Mark ``day`` missed (idempotent) and return the consecutive misses before it.

        A day that is already completed is left untouched.
        """
        self._check_editable(day)
        self._store.insert_miss(user_id, habit_id, day)
        window_start = day - timedelta(days=self._miss_lookback_days)
        rows = self._store.days_between(user_id, habit_id, window_start, day - timedelta(days=1))
        return count_prior_misses(rows, day)

    def current_streak(self, user_id: str, habit_id: str) -> int:
        """Scan backward from the most recent row within the lookback window."""
        today = self._clock.today()
        window_start = today - timedelta(days=self._lookback_days - 1)
        rows = self._store.days_between(user_id, habit_id, window_start, today)
        return count_streak(rows)

    def get_day(self, user_id: str, habit_id: str, day: date) -> Optional[HabitDay]:
        return self._store.get_day(user_id, habit_id, day)

    def claim_penalty(self, user_id: str, habit_id: str, day: date, penalty: int) -> bool:
        return self._store.claim_penalty(user_id, habit_id, day, penalty)

    def release_penalty(self, user_id: str, habit_id: str, day: date) -> None:
        self._store.release_penalty(user_id, habit_id, day)

    def recent_days(self, user_id: str, habit_id: Optional[str] = None, days: Optional[int] = None) -> List[HabitDay]:
        """Ledger rows for the last ``days`` days (default: the lookback window), newest first."""
        span = days or self._lookback_days
        today = self._clock.today()
        return self._store.days_between(user_id, habit_id, today - timedelta(days=span - 1), today)

    def _check_editable(self, day: date) -> None:
        today = self._clock.today()
        if day > today:
            raise ValidationError(f"cannot record {day}: it is in the future")
        if day <= today - timedelta(days=self._lookback_days):
            raise ValidationError(
                f"cannot record {day}: outside the {self._lookback_days}-day editable window"
            )
