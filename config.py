import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        secret_key: str,
        csrf_secret: str,
        session_max_age_hours: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.secret_key = secret_key
        self.csrf_secret = csrf_secret
        self.session_max_age_hours = session_max_age_hours
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    secret_key = os.getenv(
        "EXPENSES_SECRET_KEY",
        "4f0c2b9d8e1a47c6b3d5e7f9a1c3e5b7d9f1a3c5e7b9d1f3a5c7e9b1d3f5a7c9",
    )
    csrf_secret = os.getenv(
        "EXPENSES_CSRF_SECRET",
        "ebf511a733bdc213d6ccc715d338ad1c05bef4ad0ab32bb7eb60bb90f382380a",
    )
    session_max_age_hours = int(os.getenv("EXPENSES_SESSION_MAX_AGE_HOURS", "168"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        csrf_secret=csrf_secret,
        session_max_age_hours=session_max_age_hours,
        log_level=log_level,
    )
