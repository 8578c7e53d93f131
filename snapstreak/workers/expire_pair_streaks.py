"""Zero out pair streaks whose 24h window lapsed without both friends acting."""
import argparse
import logging
from datetime import datetime
from typing import List, Optional

from snapstreak.core.clock import Deadline, ensure_utc
from snapstreak.core.config import settings, validate_config
from snapstreak.core.logging import bind_request_id, configure_logging
from snapstreak.core.metrics import sweep_last_run_processed
from snapstreak.features.streaks.service import StreakEngine

logger = logging.getLogger("snapstreak.workers.expire_pair_streaks")


def expire_pair_streaks(
    *,
    engine: Optional[StreakEngine] = None,
    now: Optional[datetime] = None,
    deadline: Optional[Deadline] = None,
) -> dict:
    engine = engine or StreakEngine()
    with bind_request_id() as run_id:
        expired = engine.expire_stale(now, deadline=deadline)
        sweep_last_run_processed.set(expired, {"sweep": "pair_expiry"})
        logger.info(
            "[sweep] pair streak expiry",
            extra={"event_type": "sweep.pair_expiry", "expired": expired, "run_id": run_id},
        )
    return {"expired": expired}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reset pair streaks past their expiry.")
    parser.add_argument("--now", type=datetime.fromisoformat, default=None, help="ISO timestamp to evaluate at.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config()
    result = expire_pair_streaks(now=ensure_utc(args.now) if args.now else None)
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
