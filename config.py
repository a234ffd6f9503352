import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        store_timeout_secs: float,
        default_user_id: Optional[str],
        crypto_provider: str,
        crypto_api_key: Optional[str],
        crypto_timeout_secs: float,
        crypto_refresh_minutes: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.store_timeout_secs = store_timeout_secs
        self.default_user_id = default_user_id
        self.crypto_provider = crypto_provider
        self.crypto_api_key = crypto_api_key
        self.crypto_timeout_secs = crypto_timeout_secs
        self.crypto_refresh_minutes = crypto_refresh_minutes
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    store_timeout_secs = float(os.getenv("FINANCE_STORE_TIMEOUT_SECS", "10"))
    default_user_id = os.getenv("FINANCE_DEFAULT_USER_ID") or None
    crypto_provider = os.getenv("FINANCE_CRYPTO_PROVIDER", "coinmarketcap")
    crypto_api_key = os.getenv("FINANCE_CRYPTO_API_KEY") or None
    crypto_timeout_secs = float(os.getenv("FINANCE_CRYPTO_TIMEOUT_SECS", "5"))
    crypto_refresh_minutes = int(os.getenv("FINANCE_CRYPTO_REFRESH_MINUTES", "5"))
    scheduler_enabled = _env_flag("FINANCE_SCHEDULER_ENABLED", True)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        store_timeout_secs=store_timeout_secs,
        default_user_id=default_user_id,
        crypto_provider=crypto_provider,
        crypto_api_key=crypto_api_key,
        crypto_timeout_secs=crypto_timeout_secs,
        crypto_refresh_minutes=crypto_refresh_minutes,
        scheduler_enabled=scheduler_enabled,
    )
