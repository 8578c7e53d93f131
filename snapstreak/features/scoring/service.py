"""
Scoring engine: the single writer of UserScoreProfile.

Approvals add points (base + streak bonus), misses subtract a progressive
penalty. Profile writes are read -> compute -> compare_and_swap with bounded
retry, so concurrent calls for the same user never lose an update.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from typing import Callable, Optional

from snapstreak.core.clock import Clock, Deadline, SystemClock, check_deadline
from snapstreak.core.config import settings
from snapstreak.core.errors import ConcurrentUpdateConflict, NotFoundError
from snapstreak.core.logging import log_event
from snapstreak.core.metrics import cas_conflicts_total, cas_retries_total, score_points_total
from snapstreak.features.habits.store import HabitDirectory, get_habit_directory
from snapstreak.features.habits.tracker import HabitStreakTracker
from snapstreak.features.scoring import policy
from snapstreak.features.scoring.policy import approval_delta, clamp_score, miss_penalty, streak_bonus
from snapstreak.features.scoring.store import (
    ProcessedEventRegister,
    ScoreProfileStore,
    get_processed_event_register,
    get_score_profile_store,
)
from snapstreak.models.score import ScoreDelta, ScoringStats, UserScoreProfile

logger = logging.getLogger("snapstreak.scoring")

RECENT_ACTIVITY_DAYS = 7


class ScoringEngine:
    def __init__(
        self,
        tracker: Optional[HabitStreakTracker] = None,
        profiles: Optional[ScoreProfileStore] = None,
        habits: Optional[HabitDirectory] = None,
        events: Optional[ProcessedEventRegister] = None,
        clock: Optional[Clock] = None,
        *,
        max_retries: Optional[int] = None,
    ):
        self._clock = clock or SystemClock()
        self._tracker = tracker or HabitStreakTracker(clock=self._clock)
        self._profiles = profiles or get_score_profile_store()
        self._habits = habits or get_habit_directory()
        self._events = events or get_processed_event_register()
        self._max_retries = max_retries if max_retries is not None else settings.CAS_MAX_RETRIES

    @property
    def tracker(self) -> HabitStreakTracker:
        return self._tracker

    def ensure_profile(self, user_id: str) -> UserScoreProfile:
        """Create the zero profile for a new user (no-op when it exists)."""
        return self._profiles.create(user_id)

    def get_user_score_profile(self, user_id: str) -> UserScoreProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFoundError(f"score profile for user {user_id} not found")
        return profile

    def on_approval(
        self,
        user_id: str,
        habit_id: str,
        day: Optional[date] = None,
        *,
        snap_id: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> ScoreDelta:
        """Score an approved snap for ``habit_id`` on ``day`` (default: today).

        ``snap_id`` makes retries safe: an already scored snap is a no-op.
        """
        check_deadline(deadline, "on_approval")
        on_day = day or self._clock.today()
        profile = self.get_user_score_profile(user_id)
        self._require_habit(user_id, habit_id)

        if snap_id is not None and not self._events.claim(snap_id, "approval"):
            return ScoreDelta(
                user_id=user_id,
                habit_id=habit_id,
                day=on_day,
                reason="approval",
                delta=0,
                new_score=profile.score,
                new_streak=profile.current_streak,
                habit_streak=self._tracker.current_streak(user_id, habit_id),
                applied=False,
            )

        try:
            habit_streak = self._tracker.record_completion(user_id, habit_id, on_day)
            bonus = streak_bonus(habit_streak)
            delta = approval_delta(habit_streak)
            updated = self._update_profile(
                user_id,
                lambda p: replace(
                    p,
                    score=clamp_score(p.score + delta),
                    current_streak=habit_streak,
                    longest_streak=max(p.longest_streak, habit_streak),
                ),
                deadline=deadline,
                operation="on_approval",
            )
        except Exception:
            if snap_id is not None:
                self._events.release(snap_id)
            raise

        score_points_total.inc({"kind": "approval"}, amount=delta - bonus)
        if bonus:
            score_points_total.inc({"kind": "streak_bonus"}, amount=bonus)
        log_event(
            "info",
            "score.approval",
            user_id=user_id,
            habit_id=habit_id,
            event_type="score.approval",
            extra={"delta": delta, "habit_streak": habit_streak, "score": updated.score},
        )
        return ScoreDelta(
            user_id=user_id,
            habit_id=habit_id,
            day=on_day,
            reason="approval",
            delta=delta,
            new_score=updated.score,
            new_streak=updated.current_streak,
            habit_streak=habit_streak,
            streak_bonus=bonus,
        )

    def on_miss(
        self,
        user_id: str,
        habit_id: str,
        day: date,
        *,
        deadline: Optional[Deadline] = None,
    ) -> ScoreDelta:
        """Charge the progressive penalty for missing ``day``, at most once per day."""
        check_deadline(deadline, "on_miss")
        profile = self.get_user_score_profile(user_id)
        self._require_habit(user_id, habit_id)

        def unchanged(consecutive_misses: int = 0) -> ScoreDelta:
            return ScoreDelta(
                user_id=user_id,
                habit_id=habit_id,
                day=day,
                reason="miss",
                delta=0,
                new_score=profile.score,
                new_streak=profile.current_streak,
                consecutive_misses=consecutive_misses,
                applied=False,
            )

        existing = self._tracker.get_day(user_id, habit_id, day)
        if existing is not None and existing.completed:
            return unchanged()

        consecutive_misses = self._tracker.record_miss(user_id, habit_id, day)
        penalty = miss_penalty(consecutive_misses)
        if not self._tracker.claim_penalty(user_id, habit_id, day, penalty):
            # Already charged, or completed between the check and the claim.
            return unchanged(consecutive_misses)

        try:
            updated = self._update_profile(
                user_id,
                lambda p: replace(
                    p,
                    score=clamp_score(p.score - penalty),
                    current_streak=max(0, p.current_streak - 1),
                ),
                deadline=deadline,
                operation="on_miss",
            )
        except Exception:
            self._tracker.release_penalty(user_id, habit_id, day)
            raise

        score_points_total.inc({"kind": "penalty"}, amount=penalty)
        log_event(
            "info",
            "score.penalty",
            user_id=user_id,
            habit_id=habit_id,
            event_type="score.penalty",
            extra={"delta": -penalty, "consecutive_misses": consecutive_misses, "score": updated.score},
        )
        return ScoreDelta(
            user_id=user_id,
            habit_id=habit_id,
            day=day,
            reason="miss",
            delta=-penalty,
            new_score=updated.score,
            new_streak=updated.current_streak,
            consecutive_misses=consecutive_misses,
        )

    def scoring_stats(self, user_id: str) -> ScoringStats:
        """Score, streaks and the completion rate over the lookback window."""
        profile = self.get_user_score_profile(user_id)
        records = self._tracker.recent_days(user_id)
        completed = sum(1 for r in records if r.completed)
        total = len(records)
        # Round half up.
        success_rate = int(completed * 100 / total + 0.5) if total else 0
        return ScoringStats(
            user_id=user_id,
            score=profile.score,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
            success_rate=success_rate,
            completed_days=completed,
            total_days=total,
            recent_activity=records[:RECENT_ACTIVITY_DAYS],
        )

    def penalty_config(self) -> dict:
        return policy.penalty_config()

    # Internal helpers -------------------------------------------------
    def _require_habit(self, user_id: str, habit_id: str) -> None:
        habit = self._habits.get_habit(habit_id)
        if habit is None or habit.user_id != user_id:
            raise NotFoundError(f"habit {habit_id} not found for user {user_id}")

    def _update_profile(
        self,
        user_id: str,
        compute: Callable[[UserScoreProfile], UserScoreProfile],
        *,
        deadline: Optional[Deadline],
        operation: str,
    ) -> UserScoreProfile:
        for attempt in range(1, self._max_retries + 1):
            check_deadline(deadline, operation)
            current = self.get_user_score_profile(user_id)
            updated = compute(current)
            updated.validate()
            if self._profiles.compare_and_swap(current, updated):
                return replace(updated, version=current.version + 1)
            cas_retries_total.inc({"record": "score_profile"})
            logger.debug("score_profile.cas_retry", extra={"user_id": user_id, "attempt": attempt})

        cas_conflicts_total.inc({"record": "score_profile"})
        raise ConcurrentUpdateConflict(
            f"{operation} for user {user_id} lost {self._max_retries} concurrent update races"
        )
