"""
Pair streak persistence.

One record per canonical friend pair. Every update goes through
compare_and_swap() keyed on the record's version token; no lock is held
across calls.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from snapstreak.core.clock import ensure_utc
from snapstreak.core.database import get_db_session, pair_streaks, sql_configured, translate_storage_errors
from snapstreak.core.errors import ValidationError
from snapstreak.models.pair_streak import PairStreak


def _check_key(low: str, high: str) -> None:
    if not low < high:
        raise ValidationError(f"pair key must be ordered: ({low}, {high})")


class PairStreakStore:
    """Interface shared by the in-memory and SQL stores."""

    def get(self, low: str, high: str) -> Optional[PairStreak]:
        raise NotImplementedError

    def get_or_create(self, low: str, high: str) -> PairStreak:
        raise NotImplementedError

    def compare_and_swap(self, old: PairStreak, new: PairStreak) -> bool:
        raise NotImplementedError

    def list_for_user(self, user_id: str) -> List[PairStreak]:
        raise NotImplementedError

    def list_expired(self, now: datetime) -> List[PairStreak]:
        """Pairs past their deadline that still hold a non-zero streak."""
        raise NotImplementedError


class InMemoryPairStreakStore(PairStreakStore):
    def __init__(self):
        self._records: Dict[Tuple[str, str], PairStreak] = {}
        self._lock = threading.Lock()

    def get(self, low: str, high: str) -> Optional[PairStreak]:
        with self._lock:
            return self._records.get((low, high))

    def get_or_create(self, low: str, high: str) -> PairStreak:
        _check_key(low, high)
        with self._lock:
            record = self._records.get((low, high))
            if record is None:
                record = PairStreak(id_a=low, id_b=high)
                self._records[(low, high)] = record
            return record

    def compare_and_swap(self, old: PairStreak, new: PairStreak) -> bool:
        if (old.id_a, old.id_b) != (new.id_a, new.id_b):
            raise ValidationError("compare_and_swap cannot change the pair key")
        key = (old.id_a, old.id_b)
        with self._lock:
            current = self._records.get(key)
            if current is None or current.version != old.version:
                return False
            self._records[key] = replace(new, version=old.version + 1)
            return True

    def list_for_user(self, user_id: str) -> List[PairStreak]:
        with self._lock:
            records = [r for r in self._records.values() if user_id in (r.id_a, r.id_b)]
        return sorted(records, key=lambda r: (-r.current_streak, r.id_a, r.id_b))

    def list_expired(self, now: datetime) -> List[PairStreak]:
        with self._lock:
            return [
                r for r in self._records.values()
                if r.current_streak > 0 and r.streak_expires_at is not None and r.streak_expires_at < now
            ]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _row_to_record(row) -> PairStreak:
    return PairStreak(
        id_a=row.id_a,
        id_b=row.id_b,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        last_action_a=_optional_utc(row.last_action_a),
        last_action_b=_optional_utc(row.last_action_b),
        streak_started_at=_optional_utc(row.streak_started_at),
        streak_expires_at=_optional_utc(row.streak_expires_at),
        version=row.version,
    )


class SqlPairStreakStore(PairStreakStore):
    """SQLAlchemy-backed store; the version column is the CAS token."""

    def get(self, low: str, high: str) -> Optional[PairStreak]:
        with translate_storage_errors("pair_streaks.get"):
            with get_db_session() as session:
                row = session.execute(
                    select(pair_streaks).where(
                        and_(pair_streaks.c.id_a == low, pair_streaks.c.id_b == high)
                    )
                ).first()
        return _row_to_record(row) if row else None

    def get_or_create(self, low: str, high: str) -> PairStreak:
        _check_key(low, high)
        existing = self.get(low, high)
        if existing is not None:
            return existing

        with translate_storage_errors("pair_streaks.create"):
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(pair_streaks).values(
                            id_a=low,
                            id_b=high,
                            current_streak=0,
                            longest_streak=0,
                            version=0,
                        )
                    )
            except IntegrityError:
                # A concurrent creator inserted the row first; fetch theirs.
                pass

        record = self.get(low, high)
        if record is None:
            raise ValidationError(f"pair ({low}, {high}) could not be created")
        return record

    def compare_and_swap(self, old: PairStreak, new: PairStreak) -> bool:
        if (old.id_a, old.id_b) != (new.id_a, new.id_b):
            raise ValidationError("compare_and_swap cannot change the pair key")
        with translate_storage_errors("pair_streaks.compare_and_swap"):
            with get_db_session() as session:
                result = session.execute(
                    update(pair_streaks)
                    .where(
                        and_(
                            pair_streaks.c.id_a == old.id_a,
                            pair_streaks.c.id_b == old.id_b,
                            pair_streaks.c.version == old.version,
                        )
                    )
                    .values(
                        current_streak=new.current_streak,
                        longest_streak=new.longest_streak,
                        last_action_a=new.last_action_a,
                        last_action_b=new.last_action_b,
                        streak_started_at=new.streak_started_at,
                        streak_expires_at=new.streak_expires_at,
                        version=old.version + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                return result.rowcount == 1

    def list_for_user(self, user_id: str) -> List[PairStreak]:
        with translate_storage_errors("pair_streaks.list_for_user"):
            with get_db_session() as session:
                rows = session.execute(
                    select(pair_streaks)
                    .where(or_(pair_streaks.c.id_a == user_id, pair_streaks.c.id_b == user_id))
                    .order_by(pair_streaks.c.current_streak.desc(), pair_streaks.c.id_a, pair_streaks.c.id_b)
                ).all()
        return [_row_to_record(row) for row in rows]

    def list_expired(self, now: datetime) -> List[PairStreak]:
        with translate_storage_errors("pair_streaks.list_expired"):
            with get_db_session() as session:
                rows = session.execute(
                    select(pair_streaks).where(
                        and_(
                            pair_streaks.c.streak_expires_at < now,
                            pair_streaks.c.current_streak > 0,
                        )
                    )
                ).all()
        return [_row_to_record(row) for row in rows]


def get_pair_streak_store() -> PairStreakStore:
    """SQL store when DATABASE_URL is configured, in-memory otherwise."""
    return SqlPairStreakStore() if sql_configured() else InMemoryPairStreakStore()
