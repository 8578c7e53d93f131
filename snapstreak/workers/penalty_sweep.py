"""Daily penalty sweep: charge the miss penalty for every active habit left undone yesterday.

Run once per day (cron). Safe to re-run: ScoringEngine.on_miss charges a
given (user, habit, day) at most once.
"""
import argparse
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from snapstreak.core.clock import Clock, Deadline, SystemClock
from snapstreak.core.config import settings, validate_config
from snapstreak.core.errors import AppError, TimeoutError
from snapstreak.core.logging import bind_request_id, configure_logging, log_event
from snapstreak.core.metrics import sweep_habits_total, sweep_last_run_processed
from snapstreak.features.habits.store import HabitDirectory, get_habit_directory
from snapstreak.features.scoring.service import ScoringEngine
from snapstreak.models.habit import Habit

logger = logging.getLogger("snapstreak.workers.penalty_sweep")

SWEEP_NAME = "penalty"


@dataclass
class SweepReport:
    day: Optional[date] = None
    processed: int = 0
    penalized: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "day": self.day.isoformat() if self.day else None,
            "processed": self.processed,
            "penalized": self.penalized,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class PenaltySweep:
    def __init__(
        self,
        engine: Optional[ScoringEngine] = None,
        habits: Optional[HabitDirectory] = None,
        clock: Optional[Clock] = None,
        *,
        workers: Optional[int] = None,
    ):
        self._clock = clock or SystemClock()
        self._engine = engine or ScoringEngine(clock=self._clock)
        self._habits = habits or get_habit_directory()
        self._workers = max(1, workers if workers is not None else settings.SWEEP_WORKERS)
        self._report_lock = threading.Lock()

    def run(self, as_of: Optional[date] = None, *, deadline: Optional[Deadline] = None) -> SweepReport:
        """Sweep the day before ``as_of`` (default: today)."""
        day = (as_of or self._clock.today()) - timedelta(days=1)
        report = SweepReport(day=day)

        with bind_request_id(f"sweep-{uuid4().hex[:12]}") as run_id:
            habits = self._habits.list_active()
            logger.info(
                "[sweep] penalty sweep started",
                extra={"event_type": "sweep.started", "day": day.isoformat(), "habits": len(habits), "run_id": run_id},
            )
            try:
                if self._workers == 1:
                    for habit in habits:
                        self._sweep_one(habit, day, report, deadline)
                else:
                    self._run_parallel(habits, day, report, deadline)
            except TimeoutError:
                logger.warning(
                    "[sweep] deadline exceeded; partial report",
                    extra={"event_type": "sweep.timeout", "error_code": "timeout", **report.as_dict()},
                )
                raise
            finally:
                sweep_last_run_processed.set(report.processed, {"sweep": SWEEP_NAME})

            logger.info(
                "[sweep] penalty sweep finished",
                extra={"event_type": "sweep.finished", **report.as_dict()},
            )
        return report

    def _run_parallel(self, habits: List[Habit], day: date, report: SweepReport, deadline: Optional[Deadline]) -> None:
        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="penalty-sweep") as pool:
            futures = [pool.submit(self._sweep_one, habit, day, report, deadline) for habit in habits]
        timed_out = [f.exception() for f in futures if isinstance(f.exception(), TimeoutError)]
        if timed_out:
            raise timed_out[0]

    def _sweep_one(self, habit: Habit, day: date, report: SweepReport, deadline: Optional[Deadline]) -> None:
        if deadline is not None:
            deadline.check("penalty_sweep")
        try:
            existing = self._engine.tracker.get_day(habit.user_id, habit.habit_id, day)
            if existing is not None and existing.completed:
                outcome = "skipped"
            else:
                delta = self._engine.on_miss(habit.user_id, habit.habit_id, day, deadline=deadline)
                outcome = "penalized" if delta.applied else "skipped"
        except TimeoutError:
            raise
        except AppError as exc:
            outcome = "failed"
            log_event(
                "warning",
                "[sweep] habit failed",
                user_id=habit.user_id,
                habit_id=habit.habit_id,
                event_type="sweep.habit_failed",
                error_code=exc.code,
                extra={"error": exc},
            )
        except Exception:
            outcome = "failed"
            logger.exception(
                "[sweep] habit failed unexpectedly",
                extra={"user_id": habit.user_id, "habit_id": habit.habit_id, "event_type": "sweep.habit_failed"},
            )

        with self._report_lock:
            report.processed += 1
            setattr(report, outcome, getattr(report, outcome) + 1)
            if outcome == "failed":
                report.failures.append(habit.habit_id)
        sweep_habits_total.inc({"sweep": SWEEP_NAME, "outcome": outcome})


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Charge miss penalties for the day before --date.")
    parser.add_argument("--date", dest="as_of", type=_parse_date, default=None, help="Reference day (default: today, UTC).")
    parser.add_argument("--workers", type=int, default=settings.SWEEP_WORKERS, help="Parallel habit workers.")
    parser.add_argument("--timeout", type=float, default=None, help="Abort after this many seconds.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config()
    deadline = Deadline.after(args.timeout) if args.timeout else None
    report = PenaltySweep(workers=args.workers).run(args.as_of, deadline=deadline)
    print(report.as_dict())
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
