# Overview: Top-level sync entry points; single-flight guard, inbound passes, outbound stock pushes.

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, StockChange
from ..models.inventory import SYNC_STATUS_SYNCED
from ..models.sync import DIRECTION_INBOUND, DIRECTION_OUTBOUND
from ..time_utils import utcnow, parse_iso_datetime, to_utc_z
from . import inventory_config_service as settings
from . import sync_ledger_service as ledger
from .concurrency import Deadline, run_with_retry
from .errors import (
    SyncError,
    BatchSyncError,
    InventoryConnectionError,
    SyncInProgressError,
    SyncTimeoutError,
    ValidationError,
    is_retryable,
)
from .inventory_adapter import ItemRef
"""
Sync orchestrator invariants (authoritative)

- One in-process guard (is_syncing) serializes every pass that can rewrite
  local product or stock-change rows: inbound reconciliation, outbound
  pushes, warehouse switches and retry ticks.
- auto_sync() while busy is a logged no-op with zero adapter calls.
  manual_sync() while busy raises SyncInProgressError. Nothing is queued.
- Public entry points take the guard; *_unguarded / run_* helpers assume the
  caller already holds it.
- Every entry point opens a ledger record before touching the adapter and
  closes it with exactly one of complete / partial / fail.
- A StockChange delta is sent to the adapter only while
  synced_to_inventory is False; the flag flips in the same local commit that
  records the success.
- Adapter errors are recorded in the ledger and returned in the result;
  they are never raised bare to a scheduler loop.
"""

logger = logging.getLogger(__name__)

ENTITY_PRODUCT_BATCH = "ProductBatch"
ENTITY_WAREHOUSE = "Warehouse"
ENTITY_PRODUCT = "Product"
ENTITY_STOCK_CHANGE_BATCH = "StockChangeBatch"

NOT_LINKED_NOTE = " (Not linked to inventory)"


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass
class PushResult:
    warehouse_id: str
    status: str = "success"
    record_id: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    not_linked: int = 0
    failures: list = field(default_factory=list)
    message: Optional[str] = None
    error: Optional[dict] = None

    @property
    def success(self) -> bool:
        return self.status in ("success", "empty")

    def ledger_stats(self) -> dict:
        return {
            "items_processed": self.processed,
            "items_succeeded": self.succeeded,
            "items_failed": self.failed,
        }

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "warehouse_id": self.warehouse_id,
            "record_id": self.record_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "not_linked": self.not_linked,
            "failures": list(self.failures),
            "message": self.message,
            "error": self.error,
        }


@dataclass
class InboundResult:
    sync_type: str
    incremental: bool = False
    record_id: Optional[int] = None
    warehouses: list = field(default_factory=list)
    failed_warehouses: list = field(default_factory=list)
    error: Optional[dict] = None
    # (warehouse_id, SyncError) per failed warehouse, in pass order
    failure_errors: list = field(default_factory=list, repr=False)

    def _total(self, key: str) -> int:
        return sum(int(w.get(key, 0)) for w in self.warehouses)

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed_warehouses and self._total("failed") == 0

    def ledger_stats(self) -> dict:
        succeeded = self._total("created") + self._total("updated") + self._total("unchanged")
        failed = self._total("failed")
        return {
            "items_processed": succeeded + failed,
            "items_succeeded": succeeded,
            "items_failed": failed,
        }

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "sync_type": self.sync_type,
            "incremental": self.incremental,
            "record_id": self.record_id,
            "summary": {
                "warehouses": len(self.warehouses) + len(self.failed_warehouses),
                "warehouses_failed": len(self.failed_warehouses),
                "created": self._total("created"),
                "updated": self._total("updated"),
                "unchanged": self._total("unchanged"),
                "deactivated": self._total("deactivated"),
                "failed": self._total("failed"),
            },
            "warehouses": list(self.warehouses),
            "failed_warehouses": list(self.failed_warehouses),
            "error": self.error,
        }


class SyncOrchestrator:
    def __init__(self, adapter, context, *, batch_size: int = 100, timeout_seconds: float = 60):
        self.adapter = adapter
        self.context = context
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self.guard = threading.Lock()

    @property
    def is_syncing(self) -> bool:
        return self.guard.locked()

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------

    def auto_sync(self, actor: Optional[dict] = None) -> Optional[InboundResult]:
        """Periodic full inbound sync across all active warehouses. None when a pass is already running."""
        if not self.guard.acquire(blocking=False):
            logger.info("Sync already in progress, skipping auto sync")
            return None
        try:
            return self._run_inbound(sync_type="auto", actor=actor)
        finally:
            self.guard.release()

    def manual_sync(self, actor: Optional[dict] = None, options: Optional[dict] = None) -> InboundResult:
        options = options or {}
        if not isinstance(options, dict):
            raise ValidationError("options must be an object")
        warehouse_id = options.get("warehouse_id")
        if warehouse_id is not None and str(warehouse_id).strip() == "":
            raise ValidationError("warehouse_id cannot be empty")
        incremental = options.get("incremental", False)
        if not isinstance(incremental, bool):
            raise ValidationError("incremental must be a boolean")

        since = None
        if incremental:
            since = parse_iso_datetime(settings.get_sync_config()["last_sync"])

        if not self.guard.acquire(blocking=False):
            raise SyncInProgressError("Sync already in progress")
        try:
            return self._run_inbound(
                sync_type="manual",
                actor=actor,
                warehouse_ids=[str(warehouse_id).strip()] if warehouse_id is not None else None,
                since=since,
            )
        finally:
            self.guard.release()

    def _run_inbound(
        self,
        *,
        sync_type: str,
        actor: Optional[dict] = None,
        warehouse_ids: Optional[list] = None,
        since=None,
    ) -> InboundResult:
        started = utcnow()
        prefix = "manual" if sync_type == "manual" else "batch"
        payload = {"warehouse_ids": warehouse_ids, "since": to_utc_z(since)}
        record_id = ledger.begin(
            entity_type=ENTITY_PRODUCT_BATCH,
            entity_id=f"{prefix}-{_millis()}",
            direction=DIRECTION_INBOUND,
            sync_type=sync_type,
            payload=payload,
            actor=actor,
        )
        logger.info("Starting %s inbound sync (record %s)", sync_type, record_id)

        try:
            result = self.inbound_pass(
                warehouse_ids, since=since, deadline=Deadline(self.timeout_seconds),
                sync_type=sync_type, actor=actor,
            )
        except SyncError as exc:
            self._note_connection(exc)
            ledger.fail(record_id, exc)
            logger.warning("Inbound sync %s failed: %s", record_id, exc)
            return InboundResult(sync_type=sync_type, incremental=since is not None,
                                 record_id=record_id, error=exc.to_dict())

        result.record_id = record_id
        stats = result.ledger_stats()
        if result.error is None and not result.failed_warehouses:
            if stats["items_failed"]:
                ledger.partial(ENTITY_PRODUCT_BATCH, None, DIRECTION_INBOUND, result.to_dict(), stats,
                               actor, record_id=record_id, sync_type=sync_type)
            else:
                ledger.complete(record_id, result.to_dict(), stats)
        elif result.warehouses:
            # The batch closes terminal, so each failed warehouse carries its own retry.
            self.record_warehouse_failures(result, since=since, sync_type=sync_type, actor=actor)
            ledger.partial(ENTITY_PRODUCT_BATCH, None, DIRECTION_INBOUND, result.to_dict(), stats,
                           actor, record_id=record_id, sync_type=sync_type)
        else:
            ledger.fail(record_id, self._batch_error(result), stats)

        if result.warehouses:
            self._note_connection(None)
            if warehouse_ids is None:
                settings.update_last_sync(started)

        logger.info(
            "Inbound sync %s finished: %s warehouses ok, %s failed",
            record_id,
            len(result.warehouses),
            len(result.failed_warehouses),
        )
        return result

    def inbound_pass(
        self,
        warehouse_ids: Optional[list],
        *,
        since=None,
        deadline: Optional[Deadline] = None,
        sync_type: str = "auto",
        actor: Optional[dict] = None,
    ) -> InboundResult:
        if warehouse_ids is None:
            warehouse_ids = [w["id"] for w in self.adapter.list_warehouses(active_only=True)]

        result = InboundResult(sync_type=sync_type, incremental=since is not None)
        for index, warehouse_id in enumerate(warehouse_ids):
            try:
                if deadline is not None:
                    deadline.check("inbound sync")
                reconciled = self.context.reconcile(warehouse_id, since=since, deadline=deadline)
            except SyncTimeoutError as exc:
                # The timed-out warehouse and every one after it count as failed.
                for remaining in warehouse_ids[index:]:
                    self._add_warehouse_failure(result, remaining, exc)
                result.error = exc.to_dict()
                break
            except SyncError as exc:
                if isinstance(exc, InventoryConnectionError):
                    self._note_connection(exc)
                self._add_warehouse_failure(result, warehouse_id, exc)
                continue

            self._record_item_failures(reconciled, sync_type=sync_type, actor=actor)
            result.warehouses.append(reconciled.to_dict())
        return result

    @staticmethod
    def _batch_error(result: InboundResult) -> SyncError:
        if result.error is not None:
            return SyncTimeoutError(result.error.get("error", "inbound sync timed out"))
        retryable = any(f.get("retryable", True) for f in result.failed_warehouses) or not result.failed_warehouses
        return BatchSyncError(
            f"all {len(result.failed_warehouses)} warehouses failed to sync",
            retryable=retryable,
        )

    @staticmethod
    def _add_warehouse_failure(result: InboundResult, warehouse_id, exc: SyncError) -> None:
        result.failed_warehouses.append({"warehouse_id": str(warehouse_id), **exc.to_dict(),
                                         "retryable": is_retryable(exc)})
        result.failure_errors.append((str(warehouse_id), exc))
        logger.warning("Reconciliation of warehouse %s failed: %s", warehouse_id, exc)

    def record_warehouse_failures(self, result: InboundResult, *, since, sync_type, actor=None) -> None:
        """
        Open one Warehouse ledger record per failed warehouse.

        Only used when the enclosing batch record closes as partial. A batch
        that failed as a whole is retried from its own payload instead.
        """
        for warehouse_id, exc in result.failure_errors:
            record_id = ledger.begin(
                entity_type=ENTITY_WAREHOUSE,
                entity_id=warehouse_id,
                direction=DIRECTION_INBOUND,
                sync_type=sync_type,
                payload={"warehouse_id": warehouse_id, "since": to_utc_z(since)},
                actor=actor,
            )
            ledger.fail(record_id, exc)

    def _record_item_failures(self, reconciled, *, sync_type, actor) -> None:
        for failure in reconciled.failures:
            record_id = ledger.begin(
                entity_type=ENTITY_PRODUCT,
                entity_id=failure["sync_id"],
                direction=DIRECTION_INBOUND,
                sync_type=sync_type,
                payload={"warehouse_id": reconciled.warehouse_id, "sync_id": failure["sync_id"]},
                actor=actor,
            )
            ledger.fail(record_id, ValidationError(failure.get("error", "invalid inventory item")))

    def run_reconcile(
        self,
        warehouse_id: str,
        *,
        sync_type: str = "auto",
        actor: Optional[dict] = None,
        trigger: str = "manual",
        since=None,
    ) -> dict:
        """Ledger-wrapped reconciliation of one warehouse. Caller holds the guard."""
        record_id = ledger.begin(
            entity_type=ENTITY_WAREHOUSE,
            entity_id=str(warehouse_id),
            direction=DIRECTION_INBOUND,
            sync_type=sync_type,
            payload={"warehouse_id": str(warehouse_id), "since": to_utc_z(since), "trigger": trigger},
            actor=actor,
        )
        try:
            reconciled = self.context.reconcile(
                warehouse_id, since=since, deadline=Deadline(self.timeout_seconds)
            )
        except SyncError as exc:
            self._note_connection(exc)
            ledger.fail(record_id, exc)
            logger.warning("Reconciliation of warehouse %s failed: %s", warehouse_id, exc)
            return {"success": False, "record_id": record_id, "warehouse_id": str(warehouse_id), **exc.to_dict()}

        self._record_item_failures(reconciled, sync_type=sync_type, actor=actor)
        if reconciled.failed:
            ledger.partial(ENTITY_WAREHOUSE, warehouse_id, DIRECTION_INBOUND, reconciled.to_dict(),
                           reconciled.ledger_stats(), actor, record_id=record_id, sync_type=sync_type)
        else:
            ledger.complete(record_id, reconciled.to_dict(), reconciled.ledger_stats())
        return {"success": reconciled.failed == 0, "record_id": record_id, **reconciled.to_dict()}

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    def push_stock_changes(
        self,
        warehouse_id: str,
        *,
        sync_type: str = "auto",
        actor: Optional[dict] = None,
        trigger: str = "manual",
        respect_backoff: bool = True,
    ) -> PushResult:
        if warehouse_id is None or str(warehouse_id).strip() == "":
            raise ValidationError("warehouse_id is required")
        warehouse_id = str(warehouse_id).strip()
        if not self.guard.acquire(blocking=False):
            logger.info("Sync already in progress, stock push for warehouse %s left queued", warehouse_id)
            return PushResult(
                warehouse_id=warehouse_id,
                status="skipped",
                message="Sync already in progress; changes stay queued",
            )
        try:
            return self.run_push(
                warehouse_id,
                sync_type=sync_type,
                actor=actor,
                trigger=trigger,
                respect_backoff=respect_backoff,
            )
        finally:
            self.guard.release()

    def run_push(
        self,
        warehouse_id: str,
        *,
        sync_type: str = "auto",
        actor: Optional[dict] = None,
        trigger: str = "manual",
        respect_backoff: bool = True,
    ) -> PushResult:
        """Ledger-wrapped push of one warehouse's backlog. Caller holds the guard."""
        warehouse_id = str(warehouse_id)
        changes = self._load_backlog(warehouse_id, respect_backoff=respect_backoff)
        if not changes:
            return PushResult(warehouse_id=warehouse_id, status="empty", message="No pending stock changes")

        record_id = ledger.begin(
            entity_type=ENTITY_STOCK_CHANGE_BATCH,
            entity_id=warehouse_id,
            direction=DIRECTION_OUTBOUND,
            sync_type=sync_type,
            payload={
                "warehouse_id": warehouse_id,
                "change_ids": [c.id for c in changes],
                "trigger": trigger,
            },
            actor=actor,
        )
        try:
            result = self._push_changes(warehouse_id, changes, deadline=Deadline(self.timeout_seconds))
        except SyncError as exc:
            ledger.fail(record_id, exc)
            logger.warning("Stock push for warehouse %s failed: %s", warehouse_id, exc)
            return PushResult(warehouse_id=warehouse_id, status="failed", record_id=record_id,
                              processed=len(changes), error=exc.to_dict())

        result.record_id = record_id
        stats = result.ledger_stats()
        if result.failed == 0 and result.error is None:
            ledger.complete(record_id, result.to_dict(), stats)
        elif result.succeeded > 0:
            result.status = "partial"
            ledger.partial(ENTITY_STOCK_CHANGE_BATCH, warehouse_id, DIRECTION_OUTBOUND, result.to_dict(),
                           stats, actor, record_id=record_id, sync_type=sync_type)
        else:
            result.status = "failed"
            ledger.fail(record_id, self._push_error(result), stats)

        logger.info(
            "Stock push for warehouse %s: %s succeeded, %s failed",
            warehouse_id,
            result.succeeded,
            result.failed,
        )
        return result

    def push_unguarded(self, warehouse_id: str, *, respect_backoff: bool = False) -> PushResult:
        """Push without ledger bookkeeping; used when replaying an existing ledger record."""
        warehouse_id = str(warehouse_id)
        changes = self._load_backlog(warehouse_id, respect_backoff=respect_backoff)
        if not changes:
            return PushResult(warehouse_id=warehouse_id, status="empty", message="No pending stock changes")
        result = self._push_changes(warehouse_id, changes, deadline=Deadline(self.timeout_seconds))
        if result.succeeded == 0 and (result.failed or result.error):
            raise self._push_error(result)
        if result.failed:
            result.status = "partial"
        return result

    @staticmethod
    def _push_error(result: PushResult) -> SyncError:
        if result.error is not None and result.error.get("error_code") == SyncTimeoutError.error_code:
            return SyncTimeoutError(result.error["error"])
        retryable = any(f.get("retryable", True) for f in result.failures) or not result.failures
        return BatchSyncError(
            f"all {result.failed} stock changes failed to sync",
            retryable=retryable,
            warehouse_id=result.warehouse_id,
        )

    def _load_backlog(self, warehouse_id: str, *, respect_backoff: bool) -> list:
        q = db.session.query(StockChange).filter(
            StockChange.warehouse_id == warehouse_id,
            StockChange.synced_to_inventory.is_(False),
        )
        if respect_backoff:
            now = utcnow()
            q = q.filter(
                (StockChange.next_attempt_at.is_(None)) | (StockChange.next_attempt_at <= now)
            )
        return q.order_by(StockChange.created_at.asc(), StockChange.id.asc()).limit(self.batch_size).all()

    def _push_changes(self, warehouse_id: str, changes: list, *, deadline: Deadline) -> PushResult:
        result = PushResult(warehouse_id=warehouse_id)
        touched_products = set()
        max_step = ledger.configured_max_retries()

        for change in changes:
            if deadline.expired():
                result.error = SyncTimeoutError(
                    f"stock push for warehouse {warehouse_id} exceeded the {deadline.seconds:g}s sync budget"
                ).to_dict()
                break

            result.processed += 1
            product = change.product
            now = utcnow()

            if product is None or not product.is_linked:
                change.synced_to_inventory = True
                change.sync_date = now
                change.notes = (change.notes or "") + NOT_LINKED_NOTE
                result.succeeded += 1
                result.not_linked += 1
                continue

            ref = ItemRef(product_id=product.stock_item_id, variant_id=product.variant_id)
            try:
                applied = self.adapter.apply_stock_delta(
                    ref,
                    warehouse_id,
                    change.quantity_change,
                    change.change_type,
                    actor_id=change.performed_by_id,
                )
            except SyncError as exc:
                change.sync_attempts = int(change.sync_attempts or 0) + 1
                change.last_sync_error = str(exc)
                change.next_attempt_at = now + ledger.backoff_delay(min(change.sync_attempts, max_step))
                change.notes = f"{change.notes or ''} | Sync failed: {exc}".strip(" |")
                result.failed += 1
                result.failures.append({
                    "stock_change_id": change.id,
                    "product_id": change.product_id,
                    "retryable": is_retryable(exc),
                    **exc.to_dict(),
                })
                logger.warning("Stock change %s failed to sync: %s", change.id, exc)
                if isinstance(exc, InventoryConnectionError):
                    self._note_connection(exc)
                    break
                continue

            change.synced_to_inventory = True
            change.sync_date = now
            change.inventory_transaction_id = applied.transaction_id
            change.last_sync_error = None
            change.next_attempt_at = None
            touched_products.add(product.id)
            result.succeeded += 1

        def _commit():
            for product_id in touched_products:
                remaining = db.session.query(func.count(StockChange.id)).filter(
                    StockChange.product_id == product_id,
                    StockChange.synced_to_inventory.is_(False),
                ).scalar()
                if not remaining:
                    product = db.session.get(Product, product_id)
                    product.sync_status = SYNC_STATUS_SYNCED
                    product.last_sync_at = utcnow()
            db.session.commit()

        run_with_retry(_commit, attempts=1)
        self.context.unsynced_count(warehouse_id)
        return result

    def push_due_backlogs(self, *, sync_type: str = "auto", actor: Optional[dict] = None) -> list[dict]:
        """Push every warehouse holding stock changes whose backoff window has elapsed. Caller holds the guard."""
        now = utcnow()
        rows = db.session.query(StockChange.warehouse_id).filter(
            StockChange.synced_to_inventory.is_(False),
            (StockChange.next_attempt_at.is_(None)) | (StockChange.next_attempt_at <= now),
        ).distinct().order_by(StockChange.warehouse_id).all()

        results = []
        for (warehouse_id,) in rows:
            result = self.run_push(warehouse_id, sync_type=sync_type, actor=actor, trigger="scheduled")
            results.append(result.to_dict())
        return results

    def run_scheduled_tick(self) -> Optional[dict]:
        """One periodic tick: due outbound backlogs first, then the inbound pass."""
        if not self.guard.acquire(blocking=False):
            logger.info("Sync already in progress, skipping scheduled tick")
            return None
        try:
            pushes = self.push_due_backlogs()
            inbound = self._run_inbound(sync_type="auto")
        finally:
            self.guard.release()
        return {"pushes": pushes, "inbound": inbound.to_dict()}

    def schedule_push(self, warehouse_id: str, *, actor: Optional[dict] = None) -> threading.Thread:
        """Fire-and-forget push on a background thread with its own app context."""
        app = current_app._get_current_object()

        def _run():
            with app.app_context():
                try:
                    self.push_stock_changes(warehouse_id, actor=actor, trigger="sale")
                except Exception:
                    logger.exception("Background stock push for warehouse %s failed", warehouse_id)
                finally:
                    db.session.remove()

        thread = threading.Thread(target=_run, name=f"stock-push-{warehouse_id}", daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------
    # status / reporting
    # ------------------------------------------------------------------

    def _note_connection(self, exc: Optional[BaseException]) -> None:
        if exc is None:
            settings.set_connection_status("connected")
        elif isinstance(exc, InventoryConnectionError):
            settings.set_connection_status("disconnected")

    def test_connection(self) -> dict:
        result = self.adapter.check_connection()
        settings.set_connection_status("connected" if result["connected"] else "disconnected")
        return result

    def sync_status(self) -> dict:
        config = settings.get_full_config()
        unsynced = db.session.query(func.count(StockChange.id)).filter(
            StockChange.synced_to_inventory.is_(False)
        ).scalar() or 0
        recent = ledger.stats("hour")
        return {
            "enabled": config["enabled"],
            "auto_update_on_sale": config["auto_update_on_sale"],
            "sync_interval_seconds": config["sync_interval_seconds"],
            "last_sync": config["last_sync"],
            "connection_status": config["connection_status"],
            "is_syncing": self.is_syncing,
            "pending_syncs": len(ledger.list_pending()),
            "unsynced_changes": int(unsynced),
            "current_warehouse": self.context.current(),
            "recent_stats": recent["summary"],
        }

    def history(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        return [r.to_dict() for r in ledger.list_history(entity_type, entity_id, limit)]

    def stats(self, time_range: str = "day") -> dict:
        data = ledger.stats(time_range)
        data["start_date"] = to_utc_z(data["start_date"])
        return data
