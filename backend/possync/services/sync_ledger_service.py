# Overview: Service-layer operations for the sync ledger; record-keeping and backoff computation only.

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Optional

from flask import current_app, has_app_context
from sqlalchemy import case, func

from ..extensions import db
from ..models import SyncRecord
from ..models.sync import (
    DIRECTIONS,
    SYNC_TYPES,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SUCCESS,
    STATUS_PARTIAL,
    STATUS_FAILED,
    TERMINAL_STATUSES,
)
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .errors import NotFoundError, ValidationError, error_code_for, is_retryable
"""
Sync ledger invariants (authoritative)

- One SyncRecord per logical sync operation or per-item sub-operation.
- begin() creates the row in 'processing' and commits immediately, so an
  attempt is visible even if the operation it describes rolls back.
- Every begin() is closed by exactly one of complete() / fail() / partial(record_id=...).
  Rows left in 'processing' by a crashed process are not auto-resolved;
  they stay visible to operators.
- success => error_message NULL, retry_count 0, next_retry_at NULL.
- fail(): retry_count += 1; while retry_count <= max_retries the row goes
  'pending' with next_retry_at = now + base * 2^(retry_count - 1)
  (5, 10, 20 minutes); past that, or for non-retryable errors, 'failed'.
- A row is retry-eligible iff status='pending' and (next_retry_at IS NULL
  or next_retry_at <= now).
- No business logic lives here.
"""

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_MINUTES = 5

TIME_RANGES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def _config(key: str, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def configured_max_retries() -> int:
    return int(_config("SYNC_MAX_RETRIES", DEFAULT_MAX_RETRIES))


def backoff_delay(retry_count: int, *, base_minutes: int | None = None) -> timedelta:
    """Delay before retry number retry_count (1-based): base * 2^(n-1)."""
    if base_minutes is None:
        base_minutes = int(_config("SYNC_RETRY_BASE_MINUTES", DEFAULT_BACKOFF_BASE_MINUTES))
    exponent = max(retry_count, 1) - 1
    return timedelta(minutes=base_minutes * (2 ** exponent))


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _apply_stats(record: SyncRecord, stats: Optional[dict]) -> None:
    stats = stats or {}
    record.items_processed = int(stats.get("items_processed", 0) or 0)
    record.items_succeeded = int(stats.get("items_succeeded", 0) or 0)
    record.items_failed = int(stats.get("items_failed", 0) or 0)


def _actor_fields(actor: Optional[dict]) -> dict:
    actor = actor or {}
    actor_id = actor.get("id")
    return {
        "performed_by_id": str(actor_id) if actor_id is not None else None,
        "performed_by_username": actor.get("username") or actor.get("name"),
    }


def _load(record_id: int) -> SyncRecord:
    record = db.session.get(SyncRecord, record_id)
    if record is None:
        raise NotFoundError(f"sync record {record_id} not found", record_id=record_id)
    return record


def get(record_id: int) -> SyncRecord:
    return _load(record_id)


def begin(
    *,
    entity_type: str,
    entity_id: str,
    direction: str,
    sync_type: str = "auto",
    payload: Optional[dict] = None,
    actor: Optional[dict] = None,
) -> int:
    """Create a 'processing' record and return its id."""
    if direction not in DIRECTIONS:
        raise ValidationError(f"invalid sync direction: {direction}")
    if sync_type not in SYNC_TYPES:
        raise ValidationError(f"invalid sync type: {sync_type}")

    def _op():
        now = utcnow()
        record = SyncRecord(
            entity_type=entity_type,
            entity_id=str(entity_id),
            sync_direction=direction,
            sync_type=sync_type,
            status=STATUS_PROCESSING,
            payload=_dump(payload),
            started_at=now,
            retry_count=0,
            **_actor_fields(actor),
        )
        db.session.add(record)
        db.session.commit()
        return record.id

    return run_with_retry(_op)


def complete(record_id: int, result: Any = None, stats: Optional[dict] = None) -> SyncRecord:
    def _op():
        record = _load(record_id)
        now = utcnow()
        record.status = STATUS_SUCCESS
        record.completed_at = now
        record.last_synced_at = now
        record.result = _dump(result)
        record.error_message = None
        record.error_code = None
        record.retry_count = 0
        record.next_retry_at = None
        _apply_stats(record, stats)
        db.session.commit()
        return record

    return run_with_retry(_op)


def fail(
    record_id: int,
    error: BaseException | str,
    stats: Optional[dict] = None,
    max_retries: int | None = None,
    *,
    retryable: bool | None = None,
    now: datetime | None = None,
) -> SyncRecord:
    """Record a failed attempt and schedule (or exhaust) its retry."""
    if max_retries is None:
        max_retries = configured_max_retries()
    if retryable is None:
        retryable = is_retryable(error) if isinstance(error, BaseException) else True

    def _op():
        record = _load(record_id)
        current = now or utcnow()
        record.retry_count = int(record.retry_count or 0) + 1
        record.completed_at = current
        record.error_message = str(error)
        record.error_code = error_code_for(error) if isinstance(error, BaseException) else "sync_error"
        _apply_stats(record, stats)

        if retryable and record.retry_count <= max_retries:
            record.status = STATUS_PENDING
            record.next_retry_at = current + backoff_delay(record.retry_count)
        else:
            record.status = STATUS_FAILED
            record.next_retry_at = None
        db.session.commit()
        return record

    return run_with_retry(_op)


def partial(
    entity_type: str,
    entity_id: str,
    direction: str,
    result: Any,
    stats: Optional[dict] = None,
    actor: Optional[dict] = None,
    *,
    record_id: int | None = None,
    sync_type: str = "auto",
) -> SyncRecord:
    """
    Terminal 'partial' outcome for a batch with mixed results.

    With record_id, the batch's own 'processing' record is closed as partial;
    otherwise a new terminal record is written.
    """
    stats = stats or {}
    failed_count = int(stats.get("items_failed", 0) or 0)

    def _op():
        now = utcnow()
        if record_id is not None:
            record = _load(record_id)
        else:
            record = SyncRecord(
                entity_type=entity_type,
                entity_id=str(entity_id),
                sync_direction=direction,
                sync_type=sync_type,
                started_at=now,
                retry_count=0,
                **_actor_fields(actor),
            )
            db.session.add(record)
        record.status = STATUS_PARTIAL
        record.completed_at = now
        record.last_synced_at = now
        record.result = _dump(result)
        record.error_message = f"{failed_count} items failed to sync" if failed_count > 0 else None
        record.error_code = "partial" if failed_count > 0 else None
        record.next_retry_at = None
        _apply_stats(record, stats)
        db.session.commit()
        return record

    return run_with_retry(_op)


def mark_processing(record_id: int, sync_type: str = "retry") -> SyncRecord:
    if sync_type not in SYNC_TYPES:
        raise ValidationError(f"invalid sync type: {sync_type}")

    def _op():
        record = _load(record_id)
        record.status = STATUS_PROCESSING
        record.sync_type = sync_type
        record.started_at = utcnow()
        db.session.commit()
        return record

    return run_with_retry(_op)


def list_retryable(*, now: datetime | None = None, limit: int | None = None) -> list[SyncRecord]:
    current = now or utcnow()
    q = db.session.query(SyncRecord).filter(
        SyncRecord.status == STATUS_PENDING,
        (SyncRecord.next_retry_at.is_(None)) | (SyncRecord.next_retry_at <= current),
    ).order_by(SyncRecord.created_at.asc(), SyncRecord.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def list_pending(entity_type: str | None = None, direction: str | None = None) -> list[SyncRecord]:
    q = db.session.query(SyncRecord).filter(SyncRecord.status == STATUS_PENDING)
    if entity_type:
        q = q.filter(SyncRecord.entity_type == entity_type)
    if direction:
        q = q.filter(SyncRecord.sync_direction == direction)
    return q.order_by(SyncRecord.created_at.asc(), SyncRecord.id.asc()).all()


def list_history(entity_type: str | None = None, entity_id: str | None = None, limit: int = 50) -> list[SyncRecord]:
    limit = max(1, min(int(limit), 500))
    q = db.session.query(SyncRecord)
    if entity_type:
        q = q.filter(SyncRecord.entity_type == entity_type)
    if entity_id:
        q = q.filter(SyncRecord.entity_id == str(entity_id))
    return q.order_by(SyncRecord.created_at.desc(), SyncRecord.id.desc()).limit(limit).all()


def stats(time_range: str = "day", *, now: datetime | None = None) -> dict:
    if time_range not in TIME_RANGES:
        time_range = "day"
    start = (now or utcnow()) - TIME_RANGES[time_range]

    def _count(status: str):
        return func.coalesce(func.sum(case((SyncRecord.status == status, 1), else_=0)), 0)

    rows = db.session.query(
        SyncRecord.sync_direction,
        SyncRecord.entity_type,
        func.count(SyncRecord.id).label("total"),
        _count(STATUS_SUCCESS).label("success"),
        _count(STATUS_FAILED).label("failed"),
        _count(STATUS_PARTIAL).label("partial"),
        _count(STATUS_PENDING).label("pending"),
        _count(STATUS_PROCESSING).label("processing"),
    ).filter(
        SyncRecord.created_at >= start,
    ).group_by(
        SyncRecord.sync_direction, SyncRecord.entity_type,
    ).all()

    breakdown = [
        {
            "sync_direction": r.sync_direction,
            "entity_type": r.entity_type,
            "total": int(r.total),
            "success": int(r.success),
            "failed": int(r.failed),
            "partial": int(r.partial),
            "pending": int(r.pending),
            "processing": int(r.processing),
        }
        for r in rows
    ]
    summary = {
        key: sum(item[key] for item in breakdown)
        for key in ("total", "success", "failed", "partial", "pending", "processing")
    }
    return {
        "time_range": time_range,
        "start_date": start,
        "stats": breakdown,
        "summary": summary,
    }


def reset_failed(entity_type: str | None = None, *, now: datetime | None = None) -> int:
    """Requeue terminal failures as 'pending' with a fresh backoff cycle."""
    def _op():
        q = db.session.query(SyncRecord).filter(SyncRecord.status == STATUS_FAILED)
        if entity_type:
            q = q.filter(SyncRecord.entity_type == entity_type)
        count = q.update(
            {
                SyncRecord.status: STATUS_PENDING,
                SyncRecord.retry_count: 0,
                SyncRecord.next_retry_at: now or utcnow(),
                SyncRecord.error_message: None,
                SyncRecord.error_code: None,
            },
            synchronize_session=False,
        )
        db.session.commit()
        return count

    return run_with_retry(_op)


def clean_old_records(days_to_keep: int = 30, *, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=days_to_keep)

    def _op():
        count = db.session.query(SyncRecord).filter(
            SyncRecord.created_at < cutoff,
            SyncRecord.status.in_(TERMINAL_STATUSES),
        ).delete(synchronize_session=False)
        db.session.commit()
        return count

    return run_with_retry(_op)
