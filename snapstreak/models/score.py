"""
Score domain model.

The profile is the only user-visible number this engine writes; every
change to it is described by a ScoreDelta.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Literal

from snapstreak.models.habit import HabitDay

ScoreReason = Literal["approval", "miss"]


@dataclass(frozen=True)
class UserScoreProfile:
    user_id: str
    score: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    version: int = 0

    def validate(self) -> None:
        """Ensure the profile invariants hold."""
        assert self.score >= 0, f"score out of range: {self.score}"
        assert self.current_streak >= 0, f"current_streak out of range: {self.current_streak}"
        assert self.longest_streak >= self.current_streak, (
            f"longest_streak {self.longest_streak} < current_streak {self.current_streak}"
        )


@dataclass(frozen=True)
class ScoreDelta:
    """Outcome of one scoring call.

    ``delta`` is the signed change requested (bonus positive, penalty
    negative); ``new_score`` is the clamped result actually stored.
    """

    user_id: str
    habit_id: str
    day: date
    reason: ScoreReason
    delta: int
    new_score: int
    new_streak: int
    habit_streak: int = 0
    streak_bonus: int = 0
    consecutive_misses: int = 0
    applied: bool = True  # False when the call was a no-op (duplicate / already charged)

    @property
    def penalty(self) -> int:
        return -self.delta if self.delta < 0 else 0


@dataclass(frozen=True)
class ScoringStats:
    user_id: str
    score: int
    current_streak: int
    longest_streak: int
    success_rate: int  # percent, rounded
    completed_days: int
    total_days: int
    recent_activity: List[HabitDay] = field(default_factory=list)
