"""
Scoring policy.

Pure, deterministic arithmetic. No storage, no clock.

- Approved snap: +1 base.
- Streak bonus: one point per completed block of 7 streak days
  (7 -> +1, 14 -> +2, 21 -> +3).
- Miss: progressive penalty of consecutive prior misses + 1, capped at 3.
- Scores never go below zero.
"""

from typing import Optional

from snapstreak.core.config import settings


def streak_bonus(streak: int, block_days: Optional[int] = None) -> int:
    block = block_days or settings.STREAK_BONUS_BLOCK_DAYS
    if streak < block:
        return 0
    return streak // block


def approval_delta(streak: int, base_points: Optional[int] = None, block_days: Optional[int] = None) -> int:
    base = settings.APPROVAL_BASE_POINTS if base_points is None else base_points
    return base + streak_bonus(streak, block_days)


def miss_penalty(consecutive_misses: int, max_penalty: Optional[int] = None) -> int:
    cap = settings.MAX_MISS_PENALTY if max_penalty is None else max_penalty
    return min(max(consecutive_misses, 0) + 1, cap)


def clamp_score(score: int) -> int:
    return max(0, score)


def penalty_config() -> dict:
    """Human-readable penalty rules for profile and help screens."""
    cap = settings.MAX_MISS_PENALTY
    return {
        "base_penalty": 1,
        "max_penalty": cap,
        "progressive_step": 1,
        "streak_decrement": 1,
        "streak_bonus_block_days": settings.STREAK_BONUS_BLOCK_DAYS,
        "description": {
            "first_miss": "First consecutive miss: -1 point, -1 streak",
            "second_miss": "Second consecutive miss: -2 points, -1 streak",
            "third_miss": f"Third+ consecutive miss: -{cap} points, -1 streak",
        },
    }
