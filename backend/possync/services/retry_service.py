# Overview: Replays retry-eligible sync ledger records through the orchestrator's handlers.

from __future__ import annotations

import logging
from typing import Optional

from ..models.sync import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    STATUS_PROCESSING,
    SYNC_TYPE_FORCED,
    SYNC_TYPE_RETRY,
)
from ..time_utils import parse_iso_datetime
from . import sync_ledger_service as ledger
from .concurrency import Deadline
from .errors import BatchSyncError, SyncError, SyncInProgressError, SyncTimeoutError, ValidationError
from .sync_orchestrator import (
    ENTITY_PRODUCT,
    ENTITY_PRODUCT_BATCH,
    ENTITY_STOCK_CHANGE_BATCH,
    ENTITY_WAREHOUSE,
)
"""
Retry scheduler invariants:

- The only driver of ledger-level replays. StockChange rows are retried by
  the next outbound push, not here.
- Dispatch is by (sync_direction, entity_type) against the stored payload;
  no closure is remembered between attempts.
- Each replay re-opens the same record (processing) and closes it with
  complete(), partial() or fail(); fail() re-applies backoff and eventually
  'failed'. A replay with any failed item or warehouse is partial, never success.
- A tick holds the orchestrator guard for its whole duration and is skipped
  when a sync pass is running.
"""

logger = logging.getLogger(__name__)


class RetryScheduler:
    def __init__(self, orchestrator, *, batch_limit: int = 50):
        self.orchestrator = orchestrator
        self.batch_limit = batch_limit
        self._handlers = {
            (DIRECTION_INBOUND, ENTITY_PRODUCT_BATCH): self._replay_inbound_batch,
            (DIRECTION_INBOUND, ENTITY_WAREHOUSE): self._replay_warehouse,
            (DIRECTION_INBOUND, ENTITY_PRODUCT): self._replay_product,
            (DIRECTION_OUTBOUND, ENTITY_STOCK_CHANGE_BATCH): self._replay_stock_changes,
        }

    def process_pending(self) -> Optional[dict]:
        """One retry tick. None when a sync pass already holds the guard."""
        guard = self.orchestrator.guard
        if not guard.acquire(blocking=False):
            logger.info("Sync in progress, skipping retry tick")
            return None
        try:
            records = ledger.list_retryable(limit=self.batch_limit)
            if not records:
                return {"processed": 0, "succeeded": 0, "failed": 0, "results": []}

            logger.info("Processing %s pending sync retries", len(records))
            results = [self._replay(record, SYNC_TYPE_RETRY) for record in records]
        finally:
            guard.release()

        succeeded = sum(1 for r in results if r["success"])
        return {
            "processed": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    def force_retry(self, record_id: int) -> dict:
        """Operator-triggered immediate replay of one record, whatever its status."""
        record = ledger.get(record_id)
        if record.status == STATUS_PROCESSING:
            raise SyncInProgressError(f"sync record {record_id} is already processing")

        guard = self.orchestrator.guard
        if not guard.acquire(blocking=False):
            raise SyncInProgressError("Sync already in progress")
        try:
            return self._replay(record, SYNC_TYPE_FORCED)
        finally:
            guard.release()

    def reset_failed_syncs(self, entity_type: Optional[str] = None) -> int:
        count = ledger.reset_failed(entity_type)
        logger.info("Reset %s failed sync records%s", count, f" ({entity_type})" if entity_type else "")
        return count

    def _replay(self, record, sync_type: str) -> dict:
        record_id = record.id
        entity_type, entity_id = record.entity_type, record.entity_id
        key = (record.sync_direction, record.entity_type)
        payload = record.payload_dict()
        ledger.mark_processing(record_id, sync_type)

        handler = self._handlers.get(key)
        try:
            if handler is None:
                raise ValidationError(f"no replay handler for {key[0]} {key[1]}")
            outcome = handler(payload)
        except SyncError as exc:
            ledger.fail(record_id, exc)
            logger.warning("Retry of sync record %s failed: %s", record_id, exc)
            return {"record_id": record_id, "success": False, **exc.to_dict()}
        except Exception as exc:
            # Keep the timer loop alive; the record carries the failure.
            ledger.fail(record_id, exc)
            logger.exception("Unexpected error replaying sync record %s", record_id)
            return {"record_id": record_id, "success": False, "error": str(exc), "error_code": "unexpected_error"}

        stats = outcome.ledger_stats()
        if key != (DIRECTION_INBOUND, ENTITY_PRODUCT) and self._is_mixed(outcome, stats):
            ledger.partial(entity_type, entity_id, key[0], outcome.to_dict(), stats,
                           record_id=record_id, sync_type=sync_type)
            logger.warning("Sync record %s replayed with %s failed items", record_id, stats["items_failed"])
            return {"record_id": record_id, "success": False, "status": "partial", "result": outcome.to_dict()}

        ledger.complete(record_id, outcome.to_dict(), stats)
        logger.info("Sync record %s replayed successfully", record_id)
        return {"record_id": record_id, "success": True, "status": "success", "result": outcome.to_dict()}

    @staticmethod
    def _is_mixed(outcome, stats: dict) -> bool:
        return (
            stats["items_failed"] > 0
            or getattr(outcome, "status", None) == "partial"
            or bool(getattr(outcome, "failed_warehouses", None))
            or getattr(outcome, "error", None) is not None
        )

    # ------------------------------------------------------------------
    # handlers (caller holds the guard)
    # ------------------------------------------------------------------

    @staticmethod
    def _require_warehouse(payload: dict) -> str:
        warehouse_id = payload.get("warehouse_id")
        if not warehouse_id:
            raise ValidationError("stored payload has no warehouse_id")
        return str(warehouse_id)

    def _replay_inbound_batch(self, payload: dict):
        orch = self.orchestrator
        since = parse_iso_datetime(payload.get("since"))
        result = orch.inbound_pass(
            payload.get("warehouse_ids"),
            since=since,
            deadline=Deadline(orch.timeout_seconds),
            sync_type=SYNC_TYPE_RETRY,
        )
        if result.failed_warehouses and not result.warehouses:
            if result.error is not None:
                raise SyncTimeoutError(result.error.get("error", "inbound sync timed out"))
            raise BatchSyncError(
                f"all {len(result.failed_warehouses)} warehouses failed to sync",
                retryable=any(f.get("retryable", True) for f in result.failed_warehouses),
            )
        orch.record_warehouse_failures(result, since=since, sync_type=SYNC_TYPE_RETRY)
        return result

    def _replay_warehouse(self, payload: dict):
        orch = self.orchestrator
        warehouse_id = self._require_warehouse(payload)
        return orch.context.reconcile(
            warehouse_id,
            since=parse_iso_datetime(payload.get("since")),
            deadline=Deadline(orch.timeout_seconds),
        )

    def _replay_product(self, payload: dict):
        orch = self.orchestrator
        warehouse_id = self._require_warehouse(payload)
        sync_id = payload.get("sync_id")
        result = orch.context.reconcile(warehouse_id, deadline=Deadline(orch.timeout_seconds))
        for failure in result.failures:
            if failure.get("sync_id") == sync_id:
                raise ValidationError(failure.get("error") or f"item {sync_id} still invalid", sync_id=sync_id)
        return result

    def _replay_stock_changes(self, payload: dict):
        warehouse_id = self._require_warehouse(payload)
        return self.orchestrator.push_unguarded(warehouse_id, respect_backoff=False)
