import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_user_id: int,
        recurring_interval_secs: int,
        recurring_max_catch_up: int,
        closure_hour: int,
        closure_minute: int,
        closure_max_windows: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_user_id = default_user_id
        self.recurring_interval_secs = recurring_interval_secs
        self.recurring_max_catch_up = recurring_max_catch_up
        self.closure_hour = closure_hour
        self.closure_minute = closure_minute
        self.closure_max_windows = closure_max_windows
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYFLOW_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("MONEYFLOW_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'moneyflow.db'}"
    timezone = os.getenv("MONEYFLOW_TIMEZONE", "Europe/Madrid")
    default_user_id = int(os.getenv("MONEYFLOW_DEFAULT_USER_ID", "1"))
    recurring_interval_secs = int(os.getenv("MONEYFLOW_RECURRING_INTERVAL_SECS", "60"))
    recurring_max_catch_up = int(os.getenv("MONEYFLOW_RECURRING_MAX_CATCH_UP", "500"))
    closure_hour = int(os.getenv("MONEYFLOW_CLOSURE_HOUR", "0"))
    closure_minute = int(os.getenv("MONEYFLOW_CLOSURE_MINUTE", "5"))
    closure_max_windows = int(os.getenv("MONEYFLOW_CLOSURE_MAX_WINDOWS", "400"))
    log_level = os.getenv("MONEYFLOW_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_user_id=default_user_id,
        recurring_interval_secs=recurring_interval_secs,
        recurring_max_catch_up=recurring_max_catch_up,
        closure_hour=closure_hour,
        closure_minute=closure_minute,
        closure_max_windows=closure_max_windows,
        log_level=log_level,
    )
