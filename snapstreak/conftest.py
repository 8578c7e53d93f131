# snapstreak/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from snapstreak.core.clock import FixedClock
from snapstreak.core.metrics import METRICS
from snapstreak.features.habits.store import InMemoryHabitDayStore, InMemoryHabitDirectory
from snapstreak.features.habits.tracker import HabitStreakTracker
from snapstreak.features.scoring.service import ScoringEngine
from snapstreak.features.scoring.store import InMemoryProcessedEventRegister, InMemoryScoreProfileStore
from snapstreak.features.streaks.service import StreakEngine
from snapstreak.features.streaks.store import InMemoryPairStreakStore

START = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def no_ambient_database(monkeypatch):
    """
    Keep store factories on the in-memory implementations.

    Tests that want SQL opt in through the ``sql_db`` fixture.
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr("snapstreak.core.config.settings.DATABASE_URL", None)
    yield


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def pair_store():
    return InMemoryPairStreakStore()


@pytest.fixture
def streak_engine(pair_store, clock):
    return StreakEngine(store=pair_store, clock=clock)


@pytest.fixture
def habit_days():
    return InMemoryHabitDayStore()


@pytest.fixture
def tracker(habit_days, clock):
    return HabitStreakTracker(store=habit_days, clock=clock)


@pytest.fixture
def habit_directory():
    return InMemoryHabitDirectory()


@pytest.fixture
def scoring_engine(tracker, habit_directory, clock):
    return ScoringEngine(
        tracker=tracker,
        profiles=InMemoryScoreProfileStore(),
        habits=habit_directory,
        events=InMemoryProcessedEventRegister(),
        clock=clock,
    )


@pytest.fixture
def sql_db(tmp_path, monkeypatch):
    """
    Throwaway SQLite file database for the SQL-backed stores.

    Sets TEST_DATABASE_URL so the store factories pick the SQL stores,
    creates all tables, and disposes the engine afterwards.
    """
    from snapstreak.core.database import create_all_tables, dispose_engine, drop_all_tables, init_engine

    url = f"sqlite:///{tmp_path / 'snapstreak_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    dispose_engine()
    init_engine(url)
    create_all_tables()

    yield url

    drop_all_tables()
    dispose_engine()
