"""
Score profile persistence plus the processed-approval register.

Profiles are updated only through compare_and_swap() on the version column.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from snapstreak.core.database import get_db_session, processed_events, sql_configured, translate_storage_errors, user_score_profiles
from snapstreak.core.errors import ValidationError
from snapstreak.models.score import UserScoreProfile


class ScoreProfileStore:
    def get(self, user_id: str) -> Optional[UserScoreProfile]:
        raise NotImplementedError

    def create(self, user_id: str) -> UserScoreProfile:
        """Create a zero profile, or return the existing one."""
        raise NotImplementedError

    def compare_and_swap(self, old: UserScoreProfile, new: UserScoreProfile) -> bool:
        raise NotImplementedError


class InMemoryScoreProfileStore(ScoreProfileStore):
    def __init__(self):
        self._profiles: Dict[str, UserScoreProfile] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[UserScoreProfile]:
        with self._lock:
            return self._profiles.get(user_id)

    def create(self, user_id: str) -> UserScoreProfile:
        with self._lock:
            return self._profiles.setdefault(user_id, UserScoreProfile(user_id=user_id))

    def compare_and_swap(self, old: UserScoreProfile, new: UserScoreProfile) -> bool:
        if old.user_id != new.user_id:
            raise ValidationError("compare_and_swap cannot change the profile owner")
        with self._lock:
            current = self._profiles.get(old.user_id)
            if current is None or current.version != old.version:
                return False
            self._profiles[old.user_id] = replace(new, version=old.version + 1)
            return True


def _row_to_profile(row) -> UserScoreProfile:
    return UserScoreProfile(
        user_id=row.user_id,
        score=row.score,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        version=row.version,
    )


class SqlScoreProfileStore(ScoreProfileStore):
    def get(self, user_id: str) -> Optional[UserScoreProfile]:
        with translate_storage_errors("user_score_profiles.get"):
            with get_db_session() as session:
                row = session.execute(
                    select(user_score_profiles).where(user_score_profiles.c.user_id == user_id)
                ).first()
        return _row_to_profile(row) if row else None

    def create(self, user_id: str) -> UserScoreProfile:
        with translate_storage_errors("user_score_profiles.create"):
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(user_score_profiles).values(
                            user_id=user_id, score=0, current_streak=0, longest_streak=0, version=0
                        )
                    )
            except IntegrityError:
                # Profile already exists.
                pass
        profile = self.get(user_id)
        if profile is None:
            raise ValidationError(f"profile {user_id} could not be created")
        return profile

    def compare_and_swap(self, old: UserScoreProfile, new: UserScoreProfile) -> bool:
        if old.user_id != new.user_id:
            raise ValidationError("compare_and_swap cannot change the profile owner")
        with translate_storage_errors("user_score_profiles.compare_and_swap"):
            with get_db_session() as session:
                result = session.execute(
                    update(user_score_profiles)
                    .where(
                        (user_score_profiles.c.user_id == old.user_id)
                        & (user_score_profiles.c.version == old.version)
                    )
                    .values(
                        score=new.score,
                        current_streak=new.current_streak,
                        longest_streak=new.longest_streak,
                        version=old.version + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                return result.rowcount == 1


class ProcessedEventRegister:
    """Remembers approval events that already moved a score."""

    def claim(self, event_id: str, scope: str) -> bool:
        """True if this call claimed the event, False if it was already claimed."""
        raise NotImplementedError

    def release(self, event_id: str) -> None:
        raise NotImplementedError


class InMemoryProcessedEventRegister(ProcessedEventRegister):
    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, event_id: str, scope: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)
            return True

    def release(self, event_id: str) -> None:
        with self._lock:
            self._seen.discard(event_id)


class SqlProcessedEventRegister(ProcessedEventRegister):
    def claim(self, event_id: str, scope: str) -> bool:
        with translate_storage_errors("processed_events.claim"):
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(processed_events).values(
                            event_id=event_id,
                            scope=scope,
                            created_at=datetime.now(timezone.utc),
                        )
                    )
                return True
            except IntegrityError:
                return False

    def release(self, event_id: str) -> None:
        with translate_storage_errors("processed_events.release"):
            with get_db_session() as session:
                session.execute(delete(processed_events).where(processed_events.c.event_id == event_id))


def get_score_profile_store() -> ScoreProfileStore:
    return SqlScoreProfileStore() if sql_configured() else InMemoryScoreProfileStore()


def get_processed_event_register() -> ProcessedEventRegister:
    return SqlProcessedEventRegister() if sql_configured() else InMemoryProcessedEventRegister()
