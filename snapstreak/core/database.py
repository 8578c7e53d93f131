"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the streak and scoring ledgers
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import false, true, create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, Boolean, Index, UniqueConstraint, CheckConstraint, PrimaryKeyConstraint
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from snapstreak.core.config import MISS_PENALTY_CEILING, settings

logger = logging.getLogger("snapstreak.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # SQLite picks its own pool; sizing arguments do not apply
        _engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the cached engine so the next access re-reads configuration."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# Friend pair streaks: one row per unordered pair, id_a < id_b
pair_streaks = Table(
    'pair_streaks',
    metadata,
    Column('id_a', String(100), nullable=False),
    Column('id_b', String(100), nullable=False),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('last_action_a', DateTime(timezone=True), nullable=True),
    Column('last_action_b', DateTime(timezone=True), nullable=True),
    Column('streak_started_at', DateTime(timezone=True), nullable=True),
    Column('streak_expires_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('id_a', 'id_b', name='pk_pair_streaks'),
    CheckConstraint('id_a < id_b', name='ck_pair_streaks_ordered'),
    CheckConstraint('longest_streak >= current_streak', name='ck_pair_streaks_longest'),
    Index('idx_pair_streaks_id_b', 'id_b'),
    # Expiry sweep scans by deadline
    Index('idx_pair_streaks_expires', 'streak_expires_at'),
)

# Daily habit ledger
habit_days = Table(
    'habit_days',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('habit_id', String(100), nullable=False),
    Column('day', Date, nullable=False),
    Column('completed', Boolean, nullable=False, server_default=false()),
    Column('snap_count', Integer, nullable=False, server_default='0'),
    Column('penalty_applied', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'habit_id', 'day', name='uq_habit_days_user_habit_day'),
    CheckConstraint(f'penalty_applied >= 0 AND penalty_applied <= {MISS_PENALTY_CEILING}', name='ck_habit_days_penalty'),
    # Backward scans for streak computation
    Index('idx_habit_days_user_habit_day', 'user_id', 'habit_id', 'day'),
)

# Score profiles, written only by the scoring engine
user_score_profiles = Table(
    'user_score_profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('score', Integer, nullable=False, server_default='0'),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('score >= 0', name='ck_user_score_profiles_score'),
    Index('idx_user_score_profiles_score', 'score'),
)

# Habit metadata (owned by the surrounding app, read by the sweep)
habits = Table(
    'habits',
    metadata,
    Column('habit_id', String(100), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_habits_user_active', 'user_id', 'is_active'),
)

# Approval events already scored (retry idempotency)
processed_events = Table(
    'processed_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('scope', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_processed_events_scope_created', 'scope', 'created_at'),
)


@contextmanager
def translate_storage_errors(operation: str):
    """Surface driver/engine failures as StorageError, keeping the cause chained."""
    from snapstreak.core.errors import StorageError

    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("storage.error", extra={"event_type": operation, "error_code": exc.__class__.__name__})
        raise StorageError(f"{operation} failed: {exc.__class__.__name__}") from exc


def sql_configured() -> bool:
    """True when a database URL is configured for the SQL-backed stores."""
    return bool(os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.DATABASE_URL)
