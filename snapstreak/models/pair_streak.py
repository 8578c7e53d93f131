from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

PairSide = Literal["a", "b"]


@dataclass(frozen=True)
class PairStreak:
    """
    Mutual streak between two friends. Keyed by the canonical (id_a, id_b)
    pair with id_a < id_b; UTC timestamps only, no direct DB concerns.
    """

    id_a: str
    id_b: str
    current_streak: int = 0
    longest_streak: int = 0
    last_action_a: Optional[datetime] = None
    last_action_b: Optional[datetime] = None
    streak_started_at: Optional[datetime] = None
    streak_expires_at: Optional[datetime] = None
    version: int = 0

    def last_action(self, side: PairSide) -> Optional[datetime]:
        return self.last_action_a if side == "a" else self.last_action_b

    def member(self, side: PairSide) -> str:
        return self.id_a if side == "a" else self.id_b

    def is_expired(self, now: datetime) -> bool:
        return self.streak_expires_at is not None and now > self.streak_expires_at


@dataclass(frozen=True)
class PairStreakResult:
    current_streak: int
    longest_streak: int
    increased: bool


@dataclass(frozen=True)
class PairStreakView:
    """A pair streak as seen by one of its members."""

    friend_id: str
    current_streak: int
    longest_streak: int
    my_last_action_at: Optional[datetime]
    friend_last_action_at: Optional[datetime]
    streak_started_at: Optional[datetime]
    streak_expires_at: Optional[datetime]

    @property
    def is_active(self) -> bool:
        return self.current_streak > 0

    @property
    def needs_my_action(self) -> bool:
        return self.my_last_action_at is None and self.friend_last_action_at is not None

    @property
    def needs_friend_action(self) -> bool:
        return self.my_last_action_at is not None and self.friend_last_action_at is None
