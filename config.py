import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


DEFAULT_BUDGET_CATEGORIES = (
    "Groceries",
    "Utilities",
    "Transportation",
    "Entertainment",
    "Shopping",
    "Other",
)


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        txn_max_attempts: int,
        txn_backoff_base_secs: float,
        txn_backoff_max_secs: float,
        category_link_mode: str,
        default_categories: tuple[str, ...],
        notify_webhook_url: Optional[str],
        notify_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.txn_max_attempts = txn_max_attempts
        self.txn_backoff_base_secs = txn_backoff_base_secs
        self.txn_backoff_max_secs = txn_backoff_max_secs
        self.category_link_mode = category_link_mode
        self.default_categories = default_categories
        self.notify_webhook_url = notify_webhook_url
        self.notify_timeout_secs = notify_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOUSEHOLD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_names(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_BUDGET_CATEGORIES
    names = tuple(part.strip() for part in raw.split(",") if part.strip())
    return names or DEFAULT_BUDGET_CATEGORIES


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "household.db"
    database_url = os.getenv("HOUSEHOLD_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOUSEHOLD_TIMEZONE", "Europe/Berlin")
    txn_max_attempts = max(1, int(os.getenv("HOUSEHOLD_TXN_MAX_ATTEMPTS", "5")))
    txn_backoff_base_secs = float(
        os.getenv("HOUSEHOLD_TXN_BACKOFF_BASE_SECS", "0.02")
    )
    txn_backoff_max_secs = float(os.getenv("HOUSEHOLD_TXN_BACKOFF_MAX_SECS", "1"))
    category_link_mode = os.getenv("HOUSEHOLD_CATEGORY_LINK_MODE", "by_id")
    default_categories = _parse_names(os.getenv("HOUSEHOLD_DEFAULT_CATEGORIES"))
    notify_webhook_url = os.getenv("HOUSEHOLD_NOTIFY_WEBHOOK_URL") or None
    notify_timeout_secs = float(os.getenv("HOUSEHOLD_NOTIFY_TIMEOUT_SECS", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        txn_max_attempts=txn_max_attempts,
        txn_backoff_base_secs=txn_backoff_base_secs,
        txn_backoff_max_secs=txn_backoff_max_secs,
        category_link_mode=category_link_mode,
        default_categories=default_categories,
        notify_webhook_url=notify_webhook_url,
        notify_timeout_secs=notify_timeout_secs,
    )
