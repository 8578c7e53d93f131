import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Pair streaks
    STREAK_WINDOW_HOURS: int = 24
    CAS_MAX_RETRIES: int = 5

    # Habit ledger
    HABIT_LOOKBACK_DAYS: int = 30
    MISS_LOOKBACK_DAYS: int = 7

    # Scoring policy
    APPROVAL_BASE_POINTS: int = 1
    STREAK_BONUS_BLOCK_DAYS: int = 7
    MAX_MISS_PENALTY: int = 3

    # Penalty sweep
    SWEEP_WORKERS: int = 1  # 1 = sequential

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()

# Upper bound of habit_days.penalty_applied
MISS_PENALTY_CEILING = 3


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("snapstreak")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    problems = []
    if cfg.STREAK_WINDOW_HOURS <= 0:
        problems.append("STREAK_WINDOW_HOURS must be positive")
    if cfg.CAS_MAX_RETRIES < 1:
        problems.append("CAS_MAX_RETRIES must be at least 1")
    if not 1 <= cfg.MAX_MISS_PENALTY <= MISS_PENALTY_CEILING:
        problems.append(f"MAX_MISS_PENALTY must be between 1 and {MISS_PENALTY_CEILING}")
    if cfg.STREAK_BONUS_BLOCK_DAYS < 1:
        problems.append("STREAK_BONUS_BLOCK_DAYS must be at least 1")
    if cfg.SWEEP_WORKERS < 1:
        problems.append("SWEEP_WORKERS must be at least 1")
    if problems:
        message = "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
