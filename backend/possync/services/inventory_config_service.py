# Overview: Service-layer access to the sync configuration store (system_settings).

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models import SystemSetting
from ..settings_catalog import (
    SETTINGS_CATALOG,
    KEY_SYNC_ENABLED,
    KEY_AUTO_UPDATE_ON_SALE,
    KEY_SYNC_INTERVAL_SECONDS,
    KEY_LAST_SYNC,
    KEY_CONNECTION_STATUS,
)
from ..time_utils import utcnow, to_utc_z
from .concurrency import run_with_retry
from .errors import ValidationError
"""
Configuration store invariants:

- Values are stored as text; typed accessors parse them on read.
- Every write commits immediately. A failed write raises PersistenceError
  so callers never report a setting change that was not durable.
- Missing keys fall back to the SETTINGS_CATALOG default.
"""

DEFAULT_SYNC_INTERVAL_SECONDS = 300

_CATALOG_DEFAULTS = {row["key"]: row["value"] for row in SETTINGS_CATALOG}
_CATALOG_DESCRIPTIONS = {row["key"]: row["description"] for row in SETTINGS_CATALOG}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def ensure_defaults() -> int:
    """Insert catalog keys that are missing. Safe to call repeatedly (idempotent)."""
    def _op():
        existing = {row.key for row in db.session.query(SystemSetting.key).all()}
        added = 0
        for row in SETTINGS_CATALOG:
            if row["key"] in existing:
                continue
            db.session.add(
                SystemSetting(key=row["key"], value=row["value"], description=row["description"])
            )
            added += 1
        db.session.commit()
        return added

    return run_with_retry(_op)


def get_setting(key: str, default: Any = None) -> Any:
    row = db.session.query(SystemSetting).filter_by(key=key).first()
    if row is None:
        fallback = _CATALOG_DEFAULTS.get(key)
        return fallback if fallback is not None else default
    return row.value if row.value is not None else default


def get_all_settings() -> dict[str, Any]:
    values = dict(_CATALOG_DEFAULTS)
    for row in db.session.query(SystemSetting).all():
        values[row.key] = row.value
    return values


def update_setting(key: str, value: Any, description: str | None = None) -> SystemSetting:
    stored = None if value is None else str(value)

    def _op():
        row = db.session.query(SystemSetting).filter_by(key=key).first()
        if row is None:
            row = SystemSetting(
                key=key,
                description=description or _CATALOG_DESCRIPTIONS.get(key) or f"Setting for {key}",
            )
            db.session.add(row)
        elif description:
            row.description = description
        row.value = stored
        db.session.commit()
        return row

    return run_with_retry(_op)


def update_settings(values: dict[str, Any]) -> None:
    """Write several keys in one commit (used for the warehouse context pair)."""
    def _op():
        for key, value in values.items():
            row = db.session.query(SystemSetting).filter_by(key=key).first()
            if row is None:
                row = SystemSetting(
                    key=key,
                    description=_CATALOG_DESCRIPTIONS.get(key) or f"Setting for {key}",
                )
                db.session.add(row)
            row.value = None if value is None else str(value)
        db.session.commit()

    run_with_retry(_op)


def get_sync_config() -> dict:
    settings = get_all_settings()
    return {
        "enabled": _parse_bool(settings.get(KEY_SYNC_ENABLED)),
        "auto_update_on_sale": _parse_bool(settings.get(KEY_AUTO_UPDATE_ON_SALE)),
        "sync_interval_seconds": _parse_int(
            settings.get(KEY_SYNC_INTERVAL_SECONDS), DEFAULT_SYNC_INTERVAL_SECONDS
        ),
        "last_sync": settings.get(KEY_LAST_SYNC),
    }


def get_full_config() -> dict:
    settings = get_all_settings()
    config = get_sync_config()
    config["connection_status"] = settings.get(KEY_CONNECTION_STATUS) or "not_checked"
    config["all_settings"] = settings
    return config


def update_last_sync(timestamp=None) -> SystemSetting:
    value = to_utc_z(timestamp or utcnow())
    return update_setting(KEY_LAST_SYNC, value)


def set_connection_status(status: str) -> SystemSetting:
    return update_setting(KEY_CONNECTION_STATUS, status)


def set_sync_enabled(enabled: bool) -> SystemSetting:
    return update_setting(KEY_SYNC_ENABLED, "true" if enabled else "false")


def set_auto_update_on_sale(enabled: bool) -> SystemSetting:
    return update_setting(KEY_AUTO_UPDATE_ON_SALE, "true" if enabled else "false")


def set_sync_interval(seconds: int) -> SystemSetting:
    if int(seconds) <= 0:
        raise ValidationError("sync interval must be positive")
    return update_setting(KEY_SYNC_INTERVAL_SECONDS, int(seconds))
