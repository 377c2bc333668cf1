# Overview: Warehouse context manager; owns the current-warehouse decision, local stock tracking and catalog reconciliation.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, StockChange
from ..models.inventory import (
    CHANGE_TYPES,
    SYNC_STATUS_SYNCED,
    SYNC_STATUS_PENDING,
    SYNC_STATUS_OUT_OF_SYNC,
)
from ..settings_catalog import KEY_CURRENT_WAREHOUSE_ID, KEY_CURRENT_WAREHOUSE_NAME
from ..time_utils import utcnow
from . import inventory_config_service as settings
from .concurrency import Deadline, lock_for_update, run_with_retry
from .errors import (
    SyncError,
    NotFoundError,
    ProductNotFoundError,
    PersistenceError,
    ValidationError,
    SyncInProgressError,
)
"""
Warehouse context invariants (authoritative)

- Exactly one current warehouse per POS process. It is loaded from the
  configuration store on first use and every change is persisted before it
  is visible in memory.
- switch_to() is the only mutation path. Switching away from a warehouse with
  unsynced stock changes requires force=True; forced switches still attempt to
  push the backlog first (best-effort).
- track_change() is the local, synchronous half of every stock-affecting POS
  event: quantity_after = max(0, quantity_before + delta). A remote push
  failure never rolls the local mutation back.
- reconcile() writes all local changes of one warehouse pass in a single
  transaction. External reads happen before the transaction opens.
- Items missing from a full pass are deactivated, never deleted. Incremental
  passes (since=...) never deactivate.
"""

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_cents(value, *, field_name: str, required: bool) -> Optional[int]:
    if value is None or value == "":
        if required:
            return 0
        return None
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"invalid {field_name}: {value!r}") from exc
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return int(amount * 100)


def make_sync_id(item_key: str, warehouse_id: str) -> str:
    return f"{item_key}_{warehouse_id}"


@dataclass
class ReconcileResult:
    warehouse_id: str
    warehouse_name: Optional[str] = None
    incremental: bool = False
    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deactivated: int = 0
    failures: list = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def ledger_stats(self) -> dict:
        return {
            "items_processed": self.created + self.updated + self.unchanged + self.failed,
            "items_succeeded": self.created + self.updated + self.unchanged,
            "items_failed": self.failed,
        }

    def to_dict(self) -> dict:
        return {
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse_name,
            "incremental": self.incremental,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deactivated": self.deactivated,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class WarehouseContext:
    """Process-wide holder of the current warehouse."""

    def __init__(self, adapter=None, orchestrator=None):
        self.adapter = adapter
        self.orchestrator = orchestrator
        self._state_lock = threading.Lock()
        self._loaded = False
        self.current_warehouse_id: Optional[str] = None
        self.current_warehouse_name: Optional[str] = None
        self.unsynced_changes_count = 0

    # ------------------------------------------------------------------
    # context
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """(Re)load the context from the configuration store."""
        warehouse_id = settings.get_setting(KEY_CURRENT_WAREHOUSE_ID)
        warehouse_name = settings.get_setting(KEY_CURRENT_WAREHOUSE_NAME)
        with self._state_lock:
            self.current_warehouse_id = str(warehouse_id) if warehouse_id else None
            self.current_warehouse_name = warehouse_name
            self._loaded = True
        if self.current_warehouse_id:
            self.unsynced_count(self.current_warehouse_id)
        logger.info(
            "Warehouse context loaded. Current: %s (%s)",
            self.current_warehouse_name,
            self.current_warehouse_id,
        )
        return self.current()

    def current(self) -> dict:
        if not self._loaded:
            self.load()
        with self._state_lock:
            return {"id": self.current_warehouse_id, "name": self.current_warehouse_name}

    def unsynced_count(self, warehouse_id: Optional[str] = None) -> int:
        target = warehouse_id or self.current()["id"]
        if not target:
            return 0
        count = db.session.query(func.count(StockChange.id)).filter(
            StockChange.warehouse_id == str(target),
            StockChange.synced_to_inventory.is_(False),
        ).scalar() or 0
        with self._state_lock:
            if str(target) == self.current_warehouse_id:
                self.unsynced_changes_count = int(count)
        return int(count)

    def switch_to(
        self,
        warehouse_id: str,
        name: Optional[str] = None,
        force: bool = False,
        *,
        actor: Optional[dict] = None,
    ) -> dict:
        if warehouse_id is None or str(warehouse_id).strip() == "":
            raise ValidationError("warehouse_id is required")
        warehouse_id = str(warehouse_id).strip()
        new_warehouse = {"id": warehouse_id, "name": name}

        current = self.current()
        if current["id"] == warehouse_id:
            return {
                "success": True,
                "changed": False,
                "message": "Already in this warehouse",
                "warehouse": current,
            }

        backlog = self.unsynced_count(current["id"]) if current["id"] else 0
        if backlog > 0 and not force:
            return {
                "success": False,
                "changed": False,
                "requires_confirmation": True,
                "message": "There are unsynced stock changes. Sync them before switching warehouse?",
                "unsynced_count": backlog,
                "current_warehouse": current,
                "new_warehouse": new_warehouse,
            }

        if self.orchestrator is None:
            raise SyncError("warehouse context is not attached to a sync orchestrator")

        guard = self.orchestrator.guard
        if not guard.acquire(timeout=self.orchestrator.timeout_seconds):
            raise SyncInProgressError("a sync pass is still running; try the switch again")
        try:
            push_result = None
            if backlog > 0:
                try:
                    push_result = self.orchestrator.run_push(
                        current["id"],
                        sync_type="manual",
                        actor=actor,
                        trigger="warehouse_switch",
                        respect_backoff=False,
                    ).to_dict()
                except SyncError as exc:
                    logger.warning(
                        "Backlog push for warehouse %s failed before switch; changes stay queued: %s",
                        current["id"],
                        exc,
                    )
                    push_result = exc.to_dict()

            display_name = name or f"Warehouse {warehouse_id}"
            try:
                settings.update_settings({
                    KEY_CURRENT_WAREHOUSE_ID: warehouse_id,
                    KEY_CURRENT_WAREHOUSE_NAME: display_name,
                })
            except PersistenceError:
                logger.exception("Failed to persist warehouse switch to %s", warehouse_id)
                raise

            with self._state_lock:
                self.current_warehouse_id = warehouse_id
                self.current_warehouse_name = display_name
                self._loaded = True
            self.unsynced_count(warehouse_id)

            reconcile_result = self.orchestrator.run_reconcile(
                warehouse_id,
                sync_type="manual" if actor else "auto",
                actor=actor,
                trigger="warehouse_switch",
            )
        finally:
            guard.release()

        logger.info("Switched to warehouse: %s (%s)", display_name, warehouse_id)
        return {
            "success": True,
            "changed": True,
            "message": "Warehouse changed successfully",
            "warehouse": {"id": warehouse_id, "name": display_name},
            "previous_warehouse": current,
            "backlog_push": push_result,
            "reconcile": reconcile_result,
        }

    # ------------------------------------------------------------------
    # local stock tracking
    # ------------------------------------------------------------------

    def track_change(
        self,
        product_id: int,
        quantity_delta: int,
        change_type: str,
        reference: Optional[dict] = None,
        actor: Optional[dict] = None,
        notes: Optional[str] = None,
        *,
        auto_push: bool = True,
        defer_push: bool = False,
    ) -> dict:
        if change_type not in CHANGE_TYPES:
            raise ValidationError(f"change_type must be one of {', '.join(CHANGE_TYPES)}")
        if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int):
            raise ValidationError("quantity_delta must be an integer")
        try:
            product_id = int(product_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("product_id must be an integer") from exc

        reference = reference or {}
        actor = actor or {}
        current_id = self.current()["id"]

        def _op():
            product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
            if product is None:
                raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)

            warehouse_id = product.warehouse_id or current_id
            if not warehouse_id:
                raise ValidationError("No warehouse selected")

            quantity_before = int(product.stock or 0)
            quantity_after = max(0, quantity_before + quantity_delta)

            product.stock = quantity_after
            product.sync_status = SYNC_STATUS_PENDING

            change = StockChange(
                product_id=product.id,
                warehouse_id=str(warehouse_id),
                quantity_change=quantity_delta,
                quantity_before=quantity_before,
                quantity_after=quantity_after,
                change_type=change_type,
                reference_id=str(reference["id"]) if reference.get("id") is not None else None,
                reference_type=reference.get("type"),
                performed_by_id=str(actor["id"]) if actor.get("id") is not None else None,
                performed_by_name=actor.get("name") or actor.get("username"),
                notes=notes or f"{change_type}: {quantity_delta} units",
                synced_to_inventory=False,
            )
            db.session.add(change)
            db.session.commit()
            return product, change

        product, change = run_with_retry(_op)
        warehouse_id = change.warehouse_id
        product_summary = {
            "id": product.id,
            "name": product.name,
            "stock_before": change.quantity_before,
            "stock_after": change.quantity_after,
        }

        with self._state_lock:
            if warehouse_id == self.current_warehouse_id:
                self.unsynced_changes_count += 1

        push_result = None
        if auto_push and change_type == "sale" and self.orchestrator is not None:
            if settings.get_sync_config()["auto_update_on_sale"]:
                push_result = self._push_after_change(warehouse_id, change.id, defer_push, actor)

        return {
            "success": True,
            "stock_change": change.to_dict(),
            "product": product_summary,
            "push": push_result,
        }

    def _push_after_change(self, warehouse_id: str, change_id: int, defer: bool, actor: dict) -> dict:
        if defer:
            self.orchestrator.schedule_push(warehouse_id, actor=actor)
            return {"scheduled": True, "warehouse_id": warehouse_id}
        try:
            return self.orchestrator.push_stock_changes(
                warehouse_id, actor=actor, trigger="sale"
            ).to_dict()
        except SyncError as exc:
            logger.warning(
                "Auto-push after stock change %s failed; it stays queued: %s", change_id, exc
            )
            return exc.to_dict()

    def process_sale_stock_changes(self, sale_id, sale_items: list[dict], actor: Optional[dict] = None) -> dict:
        """Track one negative stock change per sale line, then push once per warehouse."""
        successful = []
        failed = []
        warehouses = set()
        for item in sale_items:
            try:
                quantity = int(item["quantity"])
                result = self.track_change(
                    item["product_id"],
                    -quantity,
                    "sale",
                    reference={"id": sale_id, "type": "sale"},
                    actor=actor,
                    notes=f"Sale #{sale_id} - {quantity} units",
                    auto_push=False,
                )
            except (KeyError, TypeError, ValueError) as exc:
                failed.append({"item": item, "error": f"invalid sale item: {exc}"})
                continue
            except SyncError as exc:
                failed.append({"item": item, **exc.to_dict()})
                continue
            successful.append(result)
            warehouses.add(result["stock_change"]["warehouse_id"])

        pushes = []
        if warehouses and self.orchestrator is not None and settings.get_sync_config()["auto_update_on_sale"]:
            for warehouse_id in sorted(warehouses):
                pushes.append(self._push_after_change(warehouse_id, None, False, actor or {}))

        return {
            "success": not failed,
            "successful_count": len(successful),
            "failed_count": len(failed),
            "successful": successful,
            "failed": failed,
            "pushes": pushes,
        }

    def validate_sale_items(self, sale_items: list[dict], warehouse_id: Optional[str] = None) -> dict:
        target = warehouse_id or self.current()["id"]
        if not target:
            raise ValidationError("No warehouse selected for validation")

        validations = []
        errors = []
        for item in sale_items:
            if not isinstance(item, dict):
                raise ValidationError("each sale item must be an object")
            try:
                requested = int(item.get("quantity") or 0)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"invalid quantity: {item.get('quantity')!r}") from exc

            product = db.session.query(Product).filter_by(
                id=item.get("product_id"),
                warehouse_id=str(target),
                is_active=True,
            ).first()
            if product is None:
                errors.append({
                    "product_id": item.get("product_id"),
                    "error": "Product not found in current warehouse",
                })
                continue

            sufficient = product.stock >= requested
            validations.append({
                "product_id": product.id,
                "product_name": product.name,
                "sync_id": product.sync_id,
                "available_stock": product.stock,
                "requested_quantity": requested,
                "sufficient": sufficient,
                "deficit": 0 if sufficient else requested - product.stock,
                "is_variant": product.is_variant,
                "variant_name": product.variant_name,
            })
            if not sufficient:
                errors.append({
                    "product_id": product.id,
                    "product_name": product.name,
                    "available": product.stock,
                    "requested": requested,
                    "deficit": requested - product.stock,
                })

        return {
            "valid": not errors,
            "validations": validations,
            "errors": errors,
            "total_items": len(sale_items),
            "insufficient_items": len(errors),
        }

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        warehouse_id: str,
        *,
        since=None,
        deadline: Optional[Deadline] = None,
    ) -> ReconcileResult:
        """Bring the local product cache for one warehouse in line with the external item set."""
        if warehouse_id is None or str(warehouse_id).strip() == "":
            raise ValidationError("warehouse_id is required")
        warehouse_id = str(warehouse_id).strip()

        warehouse = self.adapter.get_warehouse(warehouse_id)
        if warehouse is None:
            raise NotFoundError(
                f"Warehouse {warehouse_id} not found in inventory", warehouse_id=warehouse_id
            )
        items = self.adapter.list_active_items(warehouse_id=warehouse_id, since=since)
        if deadline is not None:
            deadline.check(f"reconciliation of warehouse {warehouse_id}")

        result = ReconcileResult(
            warehouse_id=warehouse_id,
            warehouse_name=warehouse.get("name"),
            incremental=since is not None,
            total=len(items),
        )
        now = utcnow()

        try:
            existing = {
                p.sync_id: p
                for p in db.session.query(Product).filter(
                    Product.warehouse_id == warehouse_id,
                    Product.sync_id.isnot(None),
                ).all()
            }
            pending_deltas = dict(
                db.session.query(StockChange.product_id, func.sum(StockChange.quantity_change)).filter(
                    StockChange.warehouse_id == warehouse_id,
                    StockChange.synced_to_inventory.is_(False),
                ).group_by(StockChange.product_id).all()
            )

            seen = set()
            for item in items:
                sync_id = make_sync_id(item.key, warehouse_id)
                seen.add(sync_id)
                try:
                    fields = self._fields_from_item(item, warehouse, sync_id)
                except ValidationError as exc:
                    result.failures.append({"sync_id": sync_id, "item": item.name or item.key, **exc.to_dict()})
                    logger.warning("Skipping inventory item %s: %s", sync_id, exc)
                    continue

                product = existing.get(sync_id)
                if product is None:
                    product = Product(sync_id=sync_id, sync_status=SYNC_STATUS_SYNCED, last_sync_at=now, **fields)
                    db.session.add(product)
                    existing[sync_id] = product
                    result.created += 1
                    continue

                pending = pending_deltas.get(product.id) if product.id is not None else None
                if pending is not None:
                    fields["stock"] = max(0, fields["stock"] + int(pending))
                    fields["sync_status"] = SYNC_STATUS_PENDING
                else:
                    fields["sync_status"] = SYNC_STATUS_SYNCED

                changed = {k: v for k, v in fields.items() if getattr(product, k) != v}
                if changed:
                    for key, value in changed.items():
                        setattr(product, key, value)
                    product.last_sync_at = now
                    result.updated += 1
                else:
                    result.unchanged += 1

            if since is None:
                for sync_id, product in existing.items():
                    if sync_id in seen or not product.is_active:
                        continue
                    product.is_active = False
                    product.sync_status = SYNC_STATUS_OUT_OF_SYNC
                    result.deactivated += 1

            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceError(f"reconciliation of warehouse {warehouse_id} failed: {exc}") from exc

        logger.info(
            "Warehouse %s reconciled. Created: %s, Updated: %s, Unchanged: %s, Deactivated: %s, Failed: %s",
            warehouse_id,
            result.created,
            result.updated,
            result.unchanged,
            result.deactivated,
            result.failed,
        )
        return result

    @staticmethod
    def _fields_from_item(item, warehouse: dict, sync_id: str) -> dict:
        name = (item.name or "").strip()
        if not name:
            raise ValidationError("inventory item has no name")
        is_variant = item.item_type == "variant"
        return {
            "name": name,
            "sku": item.sku or f"INV-{item.key}",
            "barcode": item.barcode,
            "description": item.description,
            "price_cents": _to_cents(item.price, field_name="price", required=True),
            "cost_price_cents": _to_cents(item.cost_price, field_name="cost_price", required=False),
            "min_stock": max(0, int(item.min_stock or 0)),
            "stock": max(0, int(item.stock or 0)),
            "category_name": item.category_name,
            "supplier_name": item.supplier_name,
            "warehouse_id": str(warehouse["id"]),
            "warehouse_name": warehouse.get("name"),
            "stock_item_id": str(item.product_id),
            "variant_id": str(item.variant_id) if item.variant_id is not None else None,
            "item_type": item.item_type,
            "is_variant": is_variant,
            "variant_name": item.variant_name,
            "parent_product_id": item.parent_product_id,
            "is_active": True,
        }

    # ------------------------------------------------------------------
    # read-only helpers for the operator surface
    # ------------------------------------------------------------------

    def available_warehouses(self) -> list[dict]:
        return self.adapter.list_warehouses()

    def warehouse_status(self, warehouse_id: Optional[str] = None) -> Optional[dict]:
        target = warehouse_id or self.current()["id"]
        if not target:
            return None
        warehouse = self.adapter.get_warehouse(str(target))
        if warehouse is None:
            return None
        summary = self.adapter.warehouse_stock_summary(str(target))
        product_count = db.session.query(func.count(Product.id)).filter(
            Product.warehouse_id == str(target),
            Product.is_active.is_(True),
        ).scalar() or 0
        return {
            "warehouse": warehouse,
            "inventory": summary,
            "pos": {"product_count": int(product_count)},
            "sync": {
                "unsynced_changes": self.unsynced_count(str(target)),
                "last_sync": settings.get_sync_config()["last_sync"],
            },
        }
