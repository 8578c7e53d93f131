"""
Daily habit ledger persistence and habit metadata lookups.

HabitDay rows are unique on (user_id, habit_id, day); every write is an
idempotent upsert or a conditional update so retries never double-count.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from snapstreak.core.database import get_db_session, habit_days, habits, sql_configured, translate_storage_errors
from snapstreak.core.errors import StorageError
from snapstreak.models.habit import Habit, HabitDay

DayKey = Tuple[str, str, date]


class HabitDayStore:
    """Interface shared by the in-memory and SQL ledgers."""

    def get_day(self, user_id: str, habit_id: str, day: date) -> Optional[HabitDay]:
        raise NotImplementedError

    def upsert_completion(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        """Mark the day completed and count one more snap."""
        raise NotImplementedError

    def insert_miss(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        """Create a miss row unless the day already exists; return the stored row."""
        raise NotImplementedError

    def claim_penalty(self, user_id: str, habit_id: str, day: date, penalty: int) -> bool:
        """Set penalty_applied on an uncharged, uncompleted day. False if already charged."""
        raise NotImplementedError

    def release_penalty(self, user_id: str, habit_id: str, day: date) -> None:
        """Undo a claim whose score charge could not be written."""
        raise NotImplementedError

    def days_between(self, user_id: str, habit_id: Optional[str], start: date, end: date) -> List[HabitDay]:
        """Rows with start <= day <= end, newest first. habit_id=None spans all habits."""
        raise NotImplementedError


class InMemoryHabitDayStore(HabitDayStore):
    def __init__(self):
        self._days: Dict[DayKey, HabitDay] = {}
        self._lock = threading.Lock()

    def get_day(self, user_id: str, habit_id: str, day: date) -> Optional[HabitDay]:
        with self._lock:
            return self._days.get((user_id, habit_id, day))

    def upsert_completion(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        key = (user_id, habit_id, day)
        with self._lock:
            row = self._days.get(key) or HabitDay(user_id=user_id, habit_id=habit_id, day=day)
            row = replace(row, completed=True, snap_count=row.snap_count + 1)
            self._days[key] = row
            return row

    def insert_miss(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        key = (user_id, habit_id, day)
        with self._lock:
            row = self._days.get(key)
            if row is None:
                row = HabitDay(user_id=user_id, habit_id=habit_id, day=day, completed=False)
                self._days[key] = row
            return row

    def claim_penalty(self, user_id: str, habit_id: str, day: date, penalty: int) -> bool:
        key = (user_id, habit_id, day)
        with self._lock:
            row = self._days.get(key)
            if row is None or row.completed or row.penalty_applied:
                return False
            self._days[key] = replace(row, penalty_applied=penalty)
            return True

    def release_penalty(self, user_id: str, habit_id: str, day: date) -> None:
        key = (user_id, habit_id, day)
        with self._lock:
            row = self._days.get(key)
            if row is not None:
                self._days[key] = replace(row, penalty_applied=0)

    def days_between(self, user_id: str, habit_id: Optional[str], start: date, end: date) -> List[HabitDay]:
        with self._lock:
            rows = [
                row for (uid, hid, day), row in self._days.items()
                if uid == user_id and (habit_id is None or hid == habit_id) and start <= day <= end
            ]
        return sorted(rows, key=lambda r: (r.day, r.habit_id), reverse=True)

    def clear(self) -> None:
        with self._lock:
            self._days.clear()


def _row_to_day(row) -> HabitDay:
    return HabitDay(
        user_id=row.user_id,
        habit_id=row.habit_id,
        day=row.day,
        completed=bool(row.completed),
        snap_count=row.snap_count,
        penalty_applied=row.penalty_applied,
    )


def _day_filter(user_id: str, habit_id: str, day: date):
    return and_(
        habit_days.c.user_id == user_id,
        habit_days.c.habit_id == habit_id,
        habit_days.c.day == day,
    )


class SqlHabitDayStore(HabitDayStore):
    def get_day(self, user_id: str, habit_id: str, day: date) -> Optional[HabitDay]:
        with translate_storage_errors("habit_days.get"):
            with get_db_session() as session:
                row = session.execute(
                    select(habit_days).where(_day_filter(user_id, habit_id, day))
                ).first()
        return _row_to_day(row) if row else None

    def upsert_completion(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        with translate_storage_errors("habit_days.upsert_completion"):
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(habit_days).values(
                            user_id=user_id,
                            habit_id=habit_id,
                            day=day,
                            completed=True,
                            snap_count=1,
                            penalty_applied=0,
                        )
                    )
            except IntegrityError:
                # Row exists: flip to completed and count the extra snap atomically.
                with get_db_session() as session:
                    session.execute(
                        update(habit_days)
                        .where(_day_filter(user_id, habit_id, day))
                        .values(completed=True, snap_count=habit_days.c.snap_count + 1)
                    )
        return self._require(user_id, habit_id, day)

    def insert_miss(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        with translate_storage_errors("habit_days.insert_miss"):
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(habit_days).values(
                            user_id=user_id,
                            habit_id=habit_id,
                            day=day,
                            completed=False,
                            snap_count=0,
                            penalty_applied=0,
                        )
                    )
            except IntegrityError:
                # Already recorded (miss or completion); the stored row wins.
                pass
        return self._require(user_id, habit_id, day)

    def claim_penalty(self, user_id: str, habit_id: str, day: date, penalty: int) -> bool:
        with translate_storage_errors("habit_days.claim_penalty"):
            with get_db_session() as session:
                result = session.execute(
                    update(habit_days)
                    .where(
                        and_(
                            _day_filter(user_id, habit_id, day),
                            habit_days.c.penalty_applied == 0,
                            habit_days.c.completed.is_(False),
                        )
                    )
                    .values(penalty_applied=penalty)
                )
                return result.rowcount == 1

    def release_penalty(self, user_id: str, habit_id: str, day: date) -> None:
        with translate_storage_errors("habit_days.release_penalty"):
            with get_db_session() as session:
                session.execute(
                    update(habit_days)
                    .where(_day_filter(user_id, habit_id, day))
                    .values(penalty_applied=0)
                )

    def days_between(self, user_id: str, habit_id: Optional[str], start: date, end: date) -> List[HabitDay]:
        conditions = [
            habit_days.c.user_id == user_id,
            habit_days.c.day >= start,
            habit_days.c.day <= end,
        ]
        if habit_id is not None:
            conditions.append(habit_days.c.habit_id == habit_id)
        with translate_storage_errors("habit_days.days_between"):
            with get_db_session() as session:
                rows = session.execute(
                    select(habit_days)
                    .where(and_(*conditions))
                    .order_by(habit_days.c.day.desc(), habit_days.c.habit_id.desc())
                ).all()
        return [_row_to_day(row) for row in rows]

    def _require(self, user_id: str, habit_id: str, day: date) -> HabitDay:
        row = self.get_day(user_id, habit_id, day)
        if row is None:
            raise StorageError(f"habit day ({user_id}, {habit_id}, {day}) vanished after write")
        return row


class HabitDirectory:
    """Read side of the app's habit table."""

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        raise NotImplementedError

    def list_active(self) -> List[Habit]:
        raise NotImplementedError

    def save_habit(self, habit: Habit) -> None:
        raise NotImplementedError


class InMemoryHabitDirectory(HabitDirectory):
    def __init__(self, initial: Optional[List[Habit]] = None):
        self._habits: Dict[str, Habit] = {h.habit_id: h for h in (initial or [])}
        self._lock = threading.Lock()

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        with self._lock:
            return self._habits.get(habit_id)

    def list_active(self) -> List[Habit]:
        with self._lock:
            return sorted((h for h in self._habits.values() if h.is_active), key=lambda h: h.habit_id)

    def save_habit(self, habit: Habit) -> None:
        with self._lock:
            self._habits[habit.habit_id] = habit


def _row_to_habit(row) -> Habit:
    return Habit(habit_id=row.habit_id, user_id=row.user_id, is_active=bool(row.is_active))


class SqlHabitDirectory(HabitDirectory):
    def get_habit(self, habit_id: str) -> Optional[Habit]:
        with translate_storage_errors("habits.get"):
            with get_db_session() as session:
                row = session.execute(select(habits).where(habits.c.habit_id == habit_id)).first()
        return _row_to_habit(row) if row else None

    def list_active(self) -> List[Habit]:
        with translate_storage_errors("habits.list_active"):
            with get_db_session() as session:
                rows = session.execute(
                    select(habits).where(habits.c.is_active.is_(True)).order_by(habits.c.habit_id)
                ).all()
        return [_row_to_habit(row) for row in rows]

    def save_habit(self, habit: Habit) -> None:
        with translate_storage_errors("habits.save"):
            with get_db_session() as session:
                result = session.execute(
                    update(habits)
                    .where(habits.c.habit_id == habit.habit_id)
                    .values(user_id=habit.user_id, is_active=habit.is_active)
                )
                if result.rowcount == 0:
                    session.execute(
                        insert(habits).values(
                            habit_id=habit.habit_id,
                            user_id=habit.user_id,
                            is_active=habit.is_active,
                        )
                    )


def get_habit_day_store() -> HabitDayStore:
    return SqlHabitDayStore() if sql_configured() else InMemoryHabitDayStore()


def get_habit_directory() -> HabitDirectory:
    return SqlHabitDirectory() if sql_configured() else InMemoryHabitDirectory()
