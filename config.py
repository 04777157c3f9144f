import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        duplicate_threshold: float,
        recurrence_max_iterations: int,
        fallback_category: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.duplicate_threshold = duplicate_threshold
        self.recurrence_max_iterations = recurrence_max_iterations
        self.fallback_category = fallback_category
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Paris")
    session_secret = os.getenv(
        "LEDGER_SESSION_SECRET",
        "3f6c2b8e91d04a7fb5e2c9d8a1f04b6e7c3d2a9f8e1b0c5d4a7f6e3b2c1d0a9f",
    )
    session_max_age_hours = int(os.getenv("LEDGER_SESSION_MAX_AGE_HOURS", "24"))
    duplicate_threshold = float(os.getenv("LEDGER_DUPLICATE_THRESHOLD", "0.5"))
    recurrence_max_iterations = int(
        os.getenv("LEDGER_RECURRENCE_MAX_ITERATIONS", "1000")
    )
    fallback_category = os.getenv("LEDGER_FALLBACK_CATEGORY", "Other")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        duplicate_threshold=duplicate_threshold,
        recurrence_max_iterations=recurrence_max_iterations,
        fallback_category=fallback_category,
        log_level=log_level,
    )
