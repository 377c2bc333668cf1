# backend/possync/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_inventory_db_url() -> str:
    # The external inventory app keeps its SQLite file under the roaming profile
    explicit_path = os.environ.get("INVENTORY_DB_PATH")
    if explicit_path:
        return f"sqlite:///{explicit_path}"
    roaming = os.environ.get("APPDATA", os.path.expanduser("~"))
    return "sqlite:///" + os.path.join(roaming, "inventory-offline", "data", "app.db")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Local POS store
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///possync.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Externally-owned inventory store (read/written only through the adapter)
    INVENTORY_DATABASE_URL = os.environ.get("INVENTORY_DATABASE_URL") or _default_inventory_db_url()

    SYNC_BATCH_SIZE = int(os.environ.get("SYNC_BATCH_SIZE", "100"))
    SYNC_TIMEOUT_SECONDS = float(os.environ.get("SYNC_TIMEOUT_SECONDS", "60"))
    SYNC_MAX_RETRIES = int(os.environ.get("SYNC_MAX_RETRIES", "3"))
    SYNC_RETRY_BASE_MINUTES = int(os.environ.get("SYNC_RETRY_BASE_MINUTES", "5"))
    SYNC_RETRY_INTERVAL_SECONDS = int(os.environ.get("SYNC_RETRY_INTERVAL_SECONDS", "300"))
    SYNC_INITIAL_DELAY_SECONDS = int(os.environ.get("SYNC_INITIAL_DELAY_SECONDS", "10"))
    SYNC_SCHEDULER_AUTOSTART = _env_bool("SYNC_SCHEDULER_AUTOSTART", False)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
