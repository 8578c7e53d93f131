from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from snapstreak.core.clock import Clock, Deadline, SystemClock, check_deadline, ensure_utc
from snapstreak.core.config import settings
from snapstreak.core.errors import ConcurrentUpdateConflict
from snapstreak.core.metrics import cas_conflicts_total, cas_retries_total, pair_streak_transitions_total
from snapstreak.features.streaks.pair_key import PairKey, canonicalize
from snapstreak.features.streaks.store import PairStreakStore, get_pair_streak_store
from snapstreak.models.pair_streak import PairSide, PairStreak, PairStreakResult, PairStreakView

logger = logging.getLogger("snapstreak.streaks")


def _with_side(record: PairStreak, side: PairSide, value: Optional[datetime]) -> PairStreak:
    if side == "a":
        return replace(record, last_action_a=value)
    return replace(record, last_action_b=value)


class StreakEngine:
    """Mutual streak state machine over a rolling window.

    Per pair: Idle (no pending actions) -> OneSided (one side acted inside
    the window) -> BothActed (increment, both sides cleared, back to a fresh
    cycle). Past ``streak_expires_at`` the next action resets the streak to 0
    and counts as the opening move of a new cycle. ``longest_streak`` is
    never reduced.
    """

    def __init__(
        self,
        store: Optional[PairStreakStore] = None,
        clock: Optional[Clock] = None,
        *,
        window: Optional[timedelta] = None,
        max_retries: Optional[int] = None,
    ):
        self._store = store or get_pair_streak_store()
        self._clock = clock or SystemClock()
        self._window = window or timedelta(hours=settings.STREAK_WINDOW_HOURS)
        self._max_retries = max_retries if max_retries is not None else settings.CAS_MAX_RETRIES

    def record_action(
        self,
        sender_id: str,
        receiver_id: str,
        now: Optional[datetime] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> PairStreakResult:
        """Record that ``sender_id`` acted toward ``receiver_id``."""
        key = canonicalize(sender_id, receiver_id)
        occurred_at = ensure_utc(now) if now is not None else self._clock.now()
        side = key.first_side

        _, result, transition = self._commit(
            key,
            lambda current: self._apply_action(current, side, occurred_at),
            deadline=deadline,
            operation="record_action",
        )
        pair_streak_transitions_total.inc({"transition": transition})
        logger.info(
            "pair_streak.%s",
            transition,
            extra={
                "pair": f"{key.low}:{key.high}",
                "user_id": sender_id,
                "event_type": f"pair_streak.{transition}",
            },
        )
        return result

    def get_pair_streak(self, user_a: str, user_b: str) -> Optional[PairStreak]:
        key = canonicalize(user_a, user_b)
        return self._store.get(key.low, key.high)

    def list_pair_streaks(self, user_id: str) -> List[PairStreakView]:
        """All of a user's pair streaks, longest current streak first."""
        views = []
        for record in self._store.list_for_user(user_id):
            key = canonicalize(record.id_a, record.id_b)
            mine = key.side_of(user_id)
            theirs: PairSide = "b" if mine == "a" else "a"
            views.append(
                PairStreakView(
                    friend_id=record.member(theirs),
                    current_streak=record.current_streak,
                    longest_streak=record.longest_streak,
                    my_last_action_at=record.last_action(mine),
                    friend_last_action_at=record.last_action(theirs),
                    streak_started_at=record.streak_started_at,
                    streak_expires_at=record.streak_expires_at,
                )
            )
        return views

    def expire_stale(self, now: Optional[datetime] = None, *, deadline: Optional[Deadline] = None) -> int:
        """Zero every streak whose deadline has passed. Returns pairs reset."""
        as_of = ensure_utc(now) if now is not None else self._clock.now()
        expired = 0
        for candidate in self._store.list_expired(as_of):
            key = canonicalize(candidate.id_a, candidate.id_b)
            _, _, transition = self._commit(
                key,
                lambda current: self._apply_expiry(current, as_of),
                deadline=deadline,
                operation="expire_stale",
            )
            if transition == "expired":
                expired += 1
                pair_streak_transitions_total.inc({"transition": "expired"})
        return expired

    # Internal helpers -------------------------------------------------
    def _commit(self, key: PairKey, compute, *, deadline: Optional[Deadline], operation: str):
        """read -> compute -> CAS, retried on version mismatch."""
        for attempt in range(1, self._max_retries + 1):
            check_deadline(deadline, operation)
            current = self._store.get_or_create(key.low, key.high)
            updated, result, transition = compute(current)
            if updated is current:
                return current, result, transition
            if self._store.compare_and_swap(current, updated):
                return updated, result, transition
            cas_retries_total.inc({"record": "pair_streak"})
            logger.debug(
                "pair_streak.cas_retry",
                extra={"pair": f"{key.low}:{key.high}", "attempt": attempt},
            )

        cas_conflicts_total.inc({"record": "pair_streak"})
        raise ConcurrentUpdateConflict(
            f"{operation} for pair ({key.low}, {key.high}) lost {self._max_retries} concurrent update races"
        )

    def _apply_action(
        self, record: PairStreak, side: PairSide, now: datetime
    ) -> Tuple[PairStreak, PairStreakResult, str]:
        expires_at = now + self._window

        if record.is_expired(now):
            updated = replace(
                record,
                current_streak=0,
                last_action_a=None,
                last_action_b=None,
                streak_started_at=None,
                streak_expires_at=expires_at,
            )
            updated = _with_side(updated, side, now)
            return updated, PairStreakResult(0, record.longest_streak, False), "reset"

        other: PairSide = "b" if side == "a" else "a"
        other_at = record.last_action(other)
        if other_at is not None and now - self._window < other_at <= now:
            current = record.current_streak + 1
            updated = replace(
                record,
                current_streak=current,
                longest_streak=max(record.longest_streak, current),
                last_action_a=None,
                last_action_b=None,
                streak_started_at=record.streak_started_at or now,
                streak_expires_at=expires_at,
            )
            return updated, PairStreakResult(current, updated.longest_streak, True), "incremented"

        updated = replace(_with_side(record, side, now), streak_expires_at=expires_at)
        return (
            updated,
            PairStreakResult(record.current_streak, record.longest_streak, False),
            "waiting",
        )

    @staticmethod
    def _apply_expiry(record: PairStreak, now: datetime) -> Tuple[PairStreak, PairStreakResult, str]:
        unchanged = PairStreakResult(record.current_streak, record.longest_streak, False)
        if record.current_streak == 0 or not record.is_expired(now):
            # Someone acted between the scan and this write.
            return record, unchanged, "skipped"
        updated = replace(
            record,
            current_streak=0,
            last_action_a=None,
            last_action_b=None,
            streak_started_at=None,
        )
        return updated, PairStreakResult(0, record.longest_streak, False), "expired"
