from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"
DIRECTIONS = (DIRECTION_INBOUND, DIRECTION_OUTBOUND)

SYNC_TYPE_AUTO = "auto"
SYNC_TYPE_MANUAL = "manual"
SYNC_TYPE_RETRY = "retry"
SYNC_TYPE_FORCED = "forced"
SYNC_TYPES = (SYNC_TYPE_AUTO, SYNC_TYPE_MANUAL, SYNC_TYPE_RETRY, SYNC_TYPE_FORCED)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_PARTIAL, STATUS_FAILED)


class SyncRecord(db.Model):
    """
    One sync attempt in the sync ledger.

    Lifecycle: processing -> success | partial | pending (retry scheduled) | failed.
    Terminal rows only leave their state through an explicit operator reset.
    """
    __tablename__ = "sync_records"
    __table_args__ = (
        db.Index("ix_sync_records_status_next_retry", "status", "next_retry_at"),
        db.Index("ix_sync_records_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(128), nullable=False)
    sync_direction = db.Column(db.String(16), nullable=False, index=True)
    sync_type = db.Column(db.String(16), nullable=False, default=SYNC_TYPE_AUTO)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PROCESSING, index=True)

    items_processed = db.Column(db.Integer, nullable=False, default=0)
    items_succeeded = db.Column(db.Integer, nullable=False, default=0)
    items_failed = db.Column(db.Integer, nullable=False, default=0)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # JSON snapshot of the input; replayed by the retry scheduler
    payload = db.Column(db.Text, nullable=True)
    # JSON snapshot of the outcome
    result = db.Column(db.Text, nullable=True)

    error_message = db.Column(db.Text, nullable=True)
    error_code = db.Column(db.String(64), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    performed_by_id = db.Column(db.String(64), nullable=True)
    performed_by_username = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncRecord id={self.id} {self.sync_direction} {self.entity_type}:{self.entity_id} "
            f"status={self.status} retries={self.retry_count}>"
        )

    def payload_dict(self) -> dict:
        if not self.payload:
            return {}
        try:
            data = json.loads(self.payload)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"value": data}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "sync_direction": self.sync_direction,
            "sync_type": self.sync_type,
            "status": self.status,
            "items_processed": self.items_processed,
            "items_succeeded": self.items_succeeded,
            "items_failed": self.items_failed,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "last_synced_at": to_utc_z(self.last_synced_at),
            "payload": self.payload_dict(),
            "result": json.loads(self.result) if self.result else None,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "next_retry_at": to_utc_z(self.next_retry_at),
            "performed_by_id": self.performed_by_id,
            "performed_by_username": self.performed_by_username,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
