from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class Habit:
    """Habit metadata owned by the surrounding app; read-only here."""

    habit_id: str
    user_id: str
    is_active: bool = True


@dataclass(frozen=True)
class HabitDay:
    """One ledger row per (user_id, habit_id, day)."""

    user_id: str
    habit_id: str
    day: date
    completed: bool = False
    snap_count: int = 0
    penalty_applied: int = 0  # 0..3 points charged for missing this day
