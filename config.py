import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        remote_database_url: Optional[str],
        user_id: str,
        timezone: str,
        preview_months: int,
        materialize_hour: int,
        materialize_minute: int,
    ) -> None:
        self.database_url = database_url
        self.remote_database_url = remote_database_url
        self.user_id = user_id
        self.timezone = timezone
        self.preview_months = preview_months
        self.materialize_hour = materialize_hour
        self.materialize_minute = materialize_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite:///{default_db}"
    remote_database_url = os.getenv("FINANCE_REMOTE_DATABASE_URL") or None
    user_id = os.getenv("FINANCE_USER_ID", "local")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    preview_months = int(os.getenv("FINANCE_PREVIEW_MONTHS", "12"))
    materialize_hour = int(os.getenv("FINANCE_MATERIALIZE_HOUR", "0"))
    materialize_minute = int(os.getenv("FINANCE_MATERIALIZE_MINUTE", "5"))
    return Settings(
        database_url=database_url,
        remote_database_url=remote_database_url,
        user_id=user_id,
        timezone=timezone,
        preview_months=preview_months,
        materialize_hour=materialize_hour,
        materialize_minute=materialize_minute,
    )
