import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        storage_timeout_secs: float,
        max_occurrences_per_run: int,
        lock_timeout_secs: float,
        scheduler_enabled: bool,
        scheduler_cron_hour: int,
        scheduler_cron_minute: int,
        scheduler_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.storage_timeout_secs = storage_timeout_secs
        self.max_occurrences_per_run = max_occurrences_per_run
        self.lock_timeout_secs = lock_timeout_secs
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_cron_hour = scheduler_cron_hour
        self.scheduler_cron_minute = scheduler_cron_minute
        self.scheduler_interval_hours = scheduler_interval_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CATCHUP_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "catchup.db"
    database_url = os.getenv("CATCHUP_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CATCHUP_TIMEZONE", "Europe/Berlin")
    storage_timeout_secs = float(os.getenv("CATCHUP_STORAGE_TIMEOUT_SECS", "5"))
    max_occurrences_per_run = int(os.getenv("CATCHUP_MAX_OCCURRENCES_PER_RUN", "1000"))
    lock_timeout_secs = float(os.getenv("CATCHUP_LOCK_TIMEOUT_SECS", "30"))
    scheduler_enabled = _env_flag("CATCHUP_SCHEDULER_ENABLED", "true")
    scheduler_cron_hour = int(os.getenv("CATCHUP_SCHEDULER_CRON_HOUR", "3"))
    scheduler_cron_minute = int(os.getenv("CATCHUP_SCHEDULER_CRON_MINUTE", "15"))
    scheduler_interval_hours = int(os.getenv("CATCHUP_SCHEDULER_INTERVAL_HOURS", "1"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        storage_timeout_secs=storage_timeout_secs,
        max_occurrences_per_run=max_occurrences_per_run,
        lock_timeout_secs=lock_timeout_secs,
        scheduler_enabled=scheduler_enabled,
        scheduler_cron_hour=scheduler_cron_hour,
        scheduler_cron_minute=scheduler_cron_minute,
        scheduler_interval_hours=scheduler_interval_hours,
    )
