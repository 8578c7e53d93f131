import io
import json
import logging
from datetime import date

import pytest

from snapstreak.core.clock import Deadline
from snapstreak.core.errors import TimeoutError
from snapstreak.core.logging import JsonFormatter, RequestIdFilter
from snapstreak.core.metrics import sweep_habits_total, sweep_last_run_processed
from snapstreak.models.habit import Habit
from snapstreak.workers import penalty_sweep
from snapstreak.workers.penalty_sweep import PenaltySweep

TODAY = date(2024, 3, 10)
YESTERDAY = date(2024, 3, 9)


@pytest.fixture
def community(scoring_engine, habit_directory):
    habit_directory.save_habit(Habit(habit_id="run", user_id="u1"))
    habit_directory.save_habit(Habit(habit_id="read", user_id="u1"))
    habit_directory.save_habit(Habit(habit_id="paused", user_id="u1", is_active=False))
    # u2 never got a score profile.
    habit_directory.save_habit(Habit(habit_id="swim", user_id="u2"))
    scoring_engine.ensure_profile("u1")
    scoring_engine.on_approval("u1", "run", YESTERDAY)
    return scoring_engine


def test_sweep_penalizes_only_undone_habits(community, habit_directory, clock, habit_days):
    report = PenaltySweep(community, habit_directory, clock).run()

    assert report.day == YESTERDAY
    assert (report.processed, report.penalized, report.skipped, report.failed) == (3, 1, 1, 1)
    assert report.failures == ["swim"]
    assert habit_days.get_day("u1", "read", YESTERDAY).penalty_applied == 1
    assert habit_days.get_day("u1", "paused", YESTERDAY) is None
    # +1 for the approval, -1 for the missed read.
    assert community.get_user_score_profile("u1").score == 0


def test_rerunning_the_sweep_is_idempotent(community, habit_directory, clock):
    sweep = PenaltySweep(community, habit_directory, clock)
    sweep.run(TODAY)
    second = sweep.run(TODAY)

    assert (second.penalized, second.skipped, second.failed) == (0, 2, 1)
    assert community.get_user_score_profile("u1").score == 0
    assert sweep_habits_total.value({"sweep": "penalty", "outcome": "penalized"}) == 1
    assert sweep_last_run_processed.value({"sweep": "penalty"}) == 3


def test_explicit_reference_day(community, habit_directory, clock, habit_days):
    report = PenaltySweep(community, habit_directory, clock).run(date(2024, 3, 9))

    assert report.day == date(2024, 3, 8)
    assert habit_days.get_day("u1", "run", date(2024, 3, 8)).completed is False


def test_parallel_workers_cover_every_habit(scoring_engine, habit_directory, clock):
    for i in range(6):
        user_id = f"user-{i}"
        habit_directory.save_habit(Habit(habit_id=f"habit-{i}", user_id=user_id))
        scoring_engine.ensure_profile(user_id)

    report = PenaltySweep(scoring_engine, habit_directory, clock, workers=4).run()

    assert (report.processed, report.penalized, report.failed) == (6, 6, 0)


def test_expired_deadline_aborts_sweep(community, habit_directory, clock):
    with pytest.raises(TimeoutError):
        PenaltySweep(community, habit_directory, clock).run(deadline=Deadline.after(-1))

    assert sweep_last_run_processed.value({"sweep": "penalty"}) == 0


def test_cli_runs_against_default_stores(capsys, monkeypatch):
    monkeypatch.setattr(penalty_sweep, "configure_logging", lambda *args, **kwargs: None)
    assert penalty_sweep.main(["--date", "2024-03-10"]) == 0
    assert "'day': '2024-03-09'" in capsys.readouterr().out


def test_cli_rejects_bad_date():
    with pytest.raises(SystemExit):
        penalty_sweep.main(["--date", "03/10/2024"])


@pytest.fixture
def json_log_stream():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    logger = logging.getLogger("snapstreak")
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    yield stream
    logger.removeHandler(handler)
    logger.setLevel(previous_level)


def test_production_logs_carry_report_counts(community, habit_directory, clock, json_log_stream):
    PenaltySweep(community, habit_directory, clock).run()

    lines = [json.loads(line) for line in json_log_stream.getvalue().splitlines()]
    finished = next(line for line in lines if line.get("event_type") == "sweep.finished")
    assert finished["day"] == "2024-03-09"
    assert (finished["processed"], finished["penalized"], finished["skipped"], finished["failed"]) == (3, 1, 1, 1)
    assert finished["request_id"].startswith("sweep-")

    failure = next(line for line in lines if line.get("event_type") == "sweep.habit_failed")
    assert failure["habit_id"] == "swim"
    assert failure["error_code"] == "not_found"
    assert "u2" in failure["error"]


def test_timeout_log_carries_partial_counts(community, habit_directory, clock, json_log_stream):
    with pytest.raises(TimeoutError):
        PenaltySweep(community, habit_directory, clock).run(deadline=Deadline.after(-1))

    lines = [json.loads(line) for line in json_log_stream.getvalue().splitlines()]
    timeout = next(line for line in lines if line.get("event_type") == "sweep.timeout")
    assert (timeout["processed"], timeout["failed"]) == (0, 0)
