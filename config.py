import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        lock_timeout_secs: float,
        reconcile_hour: int,
        reconcile_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.lock_timeout_secs = lock_timeout_secs
        self.reconcile_hour = reconcile_hour
        self.reconcile_minute = reconcile_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "UTC")
    lock_timeout_secs = float(os.getenv("BUDGETS_LOCK_TIMEOUT_SECS", "10"))
    reconcile_hour = int(os.getenv("BUDGETS_RECONCILE_HOUR", "3"))
    reconcile_minute = int(os.getenv("BUDGETS_RECONCILE_MINUTE", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        lock_timeout_secs=lock_timeout_secs,
        reconcile_hour=reconcile_hour,
        reconcile_minute=reconcile_minute,
    )
