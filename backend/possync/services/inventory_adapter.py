# Overview: Narrow client for the externally-owned inventory database; every call opens and closes its own connection.

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.pool import NullPool

from ..time_utils import to_external_timestamp
from .errors import (
    SyncError,
    InventoryConnectionError,
    QueryError,
    NotFoundError,
    InsufficientStockError,
    ValidationError,
)
"""
External inventory adapter invariants:

- The external schema is owned by the inventory application. Only the tables
  and columns used by the queries below are assumed to exist.
- No connection outlives a single call (NullPool; connect -> operate -> close).
- list_active_items degrades to a narrower query when optional tables or
  columns (categories, suppliers, thresholds) are missing.
- apply_stock_delta runs in one external transaction. The transaction-log
  row is best-effort: a failed audit insert is logged and the quantity
  update still commits.
"""

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "pos_system"


@dataclass(frozen=True)
class ItemRef:
    """Address of a stockable item in the external store."""
    product_id: str
    variant_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.variant_id is None:
            return str(self.product_id)
        return f"{self.product_id}-v{self.variant_id}"


@dataclass
class ExternalItem:
    product_id: str
    name: str
    item_type: str = "product"
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    parent_product_id: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    price: Any = None
    cost_price: Any = None
    min_stock: int = 0
    category_name: Optional[str] = None
    supplier_name: Optional[str] = None
    warehouse_id: Optional[str] = None
    stock: int = 0
    is_active: bool = True

    @property
    def ref(self) -> ItemRef:
        return ItemRef(product_id=self.product_id, variant_id=self.variant_id)

    @property
    def key(self) -> str:
        return self.ref.key

    def to_dict(self) -> dict:
        data = asdict(self)
        data["key"] = self.key
        data["price"] = None if self.price is None else str(self.price)
        data["cost_price"] = None if self.cost_price is None else str(self.cost_price)
        return data


@dataclass
class StockDeltaResult:
    item_key: str
    warehouse_id: str
    previous_stock: int
    new_stock: int
    created_stock_row: bool = False
    transaction_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# SQL shapes
# ---------------------------------------------------------------------------

_SUPPLIER_SUBQUERY = """
    (SELECT s.name FROM product_supplier ps
       JOIN suppliers s ON s.id = ps.supplier_id
      WHERE ps.product_id = p.id
      ORDER BY s.name LIMIT 1)
"""


def _stock_expr(owner: str, warehouse_scoped: bool) -> str:
    if owner == "variant":
        match = "si.variant_id = pv.id"
    else:
        match = "si.product_id = p.id AND si.variant_id IS NULL"
    scope = " AND si.warehouse_id = :warehouse_id" if warehouse_scoped else ""
    return (
        "(SELECT COALESCE(SUM(si.quantity), 0) FROM stock_items si "
        f"WHERE {match} AND si.is_deleted = 0{scope})"
    )


def _membership_clause(owner: str) -> str:
    if owner == "variant":
        match = "sx.variant_id = pv.id"
    else:
        match = "sx.product_id = p.id AND sx.variant_id IS NULL"
    return (
        " AND EXISTS (SELECT 1 FROM stock_items sx "
        f"WHERE {match} AND sx.is_deleted = 0 AND sx.warehouse_id = :warehouse_id)"
    )


def _since_clause(owner: str) -> str:
    alias = "pv" if owner == "variant" else "p"
    stock_match = "su.variant_id = pv.id" if owner == "variant" else "su.product_id = p.id"
    return (
        f" AND ({alias}.updated_at > :since OR {alias}.created_at > :since"
        f" OR EXISTS (SELECT 1 FROM stock_items su WHERE {stock_match} AND su.updated_at > :since))"
    )


def _products_sql(*, full: bool, warehouse_scoped: bool, incremental: bool) -> str:
    stock = _stock_expr("product", warehouse_scoped)
    if full:
        sql = f"""
            SELECT p.id AS product_id, p.name AS name, p.sku AS sku,
                   p.net_price AS price, p.description AS description, p.barcode AS barcode,
                   p.cost_per_item AS cost_price, p.low_stock_threshold AS min_stock,
                   c.name AS category_name, {_SUPPLIER_SUBQUERY} AS supplier_name,
                   {stock} AS stock
              FROM products p
              LEFT JOIN categories c ON c.id = p.category_id
             WHERE p.is_deleted = 0 AND p.is_published = 1
        """
    else:
        sql = f"""
            SELECT p.id AS product_id, p.name AS name, p.sku AS sku,
                   p.net_price AS price, p.barcode AS barcode,
                   {stock} AS stock
              FROM products p
             WHERE p.is_deleted = 0
        """
    if warehouse_scoped:
        sql += _membership_clause("product")
    if incremental:
        sql += _since_clause("product")
    return sql + " ORDER BY p.id"


def _variants_sql(*, full: bool, warehouse_scoped: bool, incremental: bool) -> str:
    stock = _stock_expr("variant", warehouse_scoped)
    if full:
        sql = f"""
            SELECT pv.id AS variant_id, pv.product_id AS product_id, p.name AS product_name,
                   pv.name AS variant_name, pv.sku AS sku, pv.net_price AS price,
                   pv.barcode AS barcode, pv.cost_per_item AS cost_price,
                   p.low_stock_threshold AS min_stock, p.description AS description,
                   c.name AS category_name, {_SUPPLIER_SUBQUERY} AS supplier_name,
                   {stock} AS stock
              FROM product_variants pv
              JOIN products p ON p.id = pv.product_id
              LEFT JOIN categories c ON c.id = p.category_id
             WHERE pv.is_deleted = 0 AND p.is_deleted = 0 AND p.is_published = 1
        """
    else:
        sql = f"""
            SELECT pv.id AS variant_id, pv.product_id AS product_id, p.name AS product_name,
                   pv.name AS variant_name, pv.sku AS sku, pv.net_price AS price,
                   pv.barcode AS barcode, {stock} AS stock
              FROM product_variants pv
              JOIN products p ON p.id = pv.product_id
             WHERE pv.is_deleted = 0 AND p.is_deleted = 0
        """
    if warehouse_scoped:
        sql += _membership_clause("variant")
    if incremental:
        sql += _since_clause("variant")
    return sql + " ORDER BY pv.product_id, pv.id"


def _as_str(value) -> Optional[str]:
    return None if value is None else str(value)


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class ExternalInventoryAdapter:
    """Sole gateway to the external inventory datastore."""

    def __init__(self, database_url: str, *, echo: bool = False):
        self.database_url = database_url
        try:
            self._url = make_url(database_url)
            self._engine = create_engine(database_url, poolclass=NullPool, echo=echo)
        except ArgumentError as exc:
            raise InventoryConnectionError(f"invalid inventory database url: {exc}") from exc

    @property
    def display_url(self) -> str:
        return self._url.render_as_string(hide_password=True)

    def dispose(self) -> None:
        self._engine.dispose()

    # ------------------------------------------------------------------
    # connection lifecycle
    # ------------------------------------------------------------------

    def _ensure_reachable(self) -> None:
        # SQLite silently creates missing files; a missing file means the
        # inventory application is not installed on this machine.
        if self._url.get_backend_name() != "sqlite":
            return
        database = self._url.database
        if not database or database == ":memory:" or database.startswith("file:"):
            return
        if not os.path.exists(database):
            raise InventoryConnectionError(f"inventory database not found at {database}")

    @contextmanager
    def _connect(self):
        self._ensure_reachable()
        try:
            conn = self._engine.connect()
        except DBAPIError as exc:
            raise InventoryConnectionError(f"failed to connect to inventory database: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    def check_connection(self) -> dict:
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except InventoryConnectionError as exc:
            return {"connected": False, "message": f"Failed to connect: {exc}"}
        except DBAPIError as exc:
            return {"connected": False, "message": f"Failed to connect: {exc}"}
        return {"connected": True, "message": "Inventory database connected successfully"}

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def list_active_items(
        self,
        warehouse_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[ExternalItem]:
        """
        Active products and variants with stock computed for warehouse_id
        (or across all warehouses when None).

        With a warehouse, only items holding a stock row in that warehouse are
        returned. With since, only items created/updated (or whose stock moved)
        after that instant are returned.
        """
        params: dict[str, Any] = {}
        if warehouse_id is not None:
            params["warehouse_id"] = warehouse_id
        if since is not None:
            params["since"] = to_external_timestamp(since)

        shape = {"warehouse_scoped": warehouse_id is not None, "incremental": since is not None}

        with self._connect() as conn:
            product_rows = self._query_with_fallback(
                conn,
                [_products_sql(full=True, **shape), _products_sql(full=False, **shape)],
                params,
                label="products",
                required=True,
            )
            variant_rows = self._query_with_fallback(
                conn,
                [_variants_sql(full=True, **shape), _variants_sql(full=False, **shape)],
                params,
                label="variants",
                required=False,
            )

        items = [self._product_from_row(row, warehouse_id) for row in product_rows]
        items.extend(self._variant_from_row(row, warehouse_id) for row in variant_rows)
        return items

    def _query_with_fallback(self, conn, statements, params, *, label: str, required: bool):
        last_exc = None
        for index, sql in enumerate(statements):
            try:
                return [row._mapping for row in conn.execute(text(sql), params)]
            except DBAPIError as exc:
                conn.rollback()
                last_exc = exc
                if index < len(statements) - 1:
                    logger.warning("Inventory %s query failed (%s); retrying with narrower query", label, exc)
        if required:
            raise QueryError(f"inventory {label} query failed: {last_exc}") from last_exc
        logger.warning("Inventory %s unavailable (%s); continuing without them", label, last_exc)
        return []

    @staticmethod
    def _product_from_row(row, warehouse_id) -> ExternalItem:
        return ExternalItem(
            product_id=str(row["product_id"]),
            name=row["name"],
            item_type="product",
            sku=row.get("sku"),
            barcode=row.get("barcode"),
            description=row.get("description"),
            price=row.get("price"),
            cost_price=row.get("cost_price"),
            min_stock=_as_int(row.get("min_stock")),
            category_name=row.get("category_name"),
            supplier_name=row.get("supplier_name"),
            warehouse_id=_as_str(warehouse_id),
            stock=_as_int(row.get("stock")),
        )

    @staticmethod
    def _variant_from_row(row, warehouse_id) -> ExternalItem:
        product_name = row.get("product_name") or ""
        variant_name = row.get("variant_name")
        display = f"{product_name} - {variant_name}" if variant_name else product_name
        return ExternalItem(
            product_id=str(row["product_id"]),
            variant_id=str(row["variant_id"]),
            name=display,
            item_type="variant",
            variant_name=variant_name,
            parent_product_id=str(row["product_id"]),
            sku=row.get("sku"),
            barcode=row.get("barcode"),
            description=row.get("description"),
            price=row.get("price"),
            cost_price=row.get("cost_price"),
            min_stock=_as_int(row.get("min_stock")),
            category_name=row.get("category_name"),
            supplier_name=row.get("supplier_name"),
            warehouse_id=_as_str(warehouse_id),
            stock=_as_int(row.get("stock")),
        )

    def list_warehouses(self, *, active_only: bool = False) -> list[dict]:
        sql = "SELECT id, name, type, location, is_active FROM warehouses WHERE is_deleted = 0"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY name"
        with self._connect() as conn:
            try:
                rows = conn.execute(text(sql)).all()
            except DBAPIError as exc:
                raise QueryError(f"inventory warehouses query failed: {exc}") from exc
        return [self._warehouse_from_row(row._mapping) for row in rows]

    def get_warehouse(self, warehouse_id: str) -> Optional[dict]:
        sql = (
            "SELECT id, name, type, location, is_active FROM warehouses "
            "WHERE id = :warehouse_id AND is_deleted = 0"
        )
        with self._connect() as conn:
            try:
                row = conn.execute(text(sql), {"warehouse_id": warehouse_id}).first()
            except DBAPIError as exc:
                raise QueryError(f"inventory warehouse lookup failed: {exc}") from exc
        return self._warehouse_from_row(row._mapping) if row is not None else None

    @staticmethod
    def _warehouse_from_row(row) -> dict:
        return {
            "id": str(row["id"]),
            "name": row["name"],
            "type": row.get("type"),
            "location": row.get("location"),
            "is_active": bool(row.get("is_active")),
        }

    def warehouse_stock_summary(self, warehouse_id: str) -> dict:
        sql = """
            SELECT COUNT(*) AS item_count, COALESCE(SUM(quantity), 0) AS total_stock
              FROM stock_items
             WHERE warehouse_id = :warehouse_id AND is_deleted = 0
        """
        with self._connect() as conn:
            try:
                row = conn.execute(text(sql), {"warehouse_id": warehouse_id}).first()
            except DBAPIError as exc:
                raise QueryError(f"inventory stock summary failed: {exc}") from exc
        return {
            "item_count": _as_int(row.item_count) if row is not None else 0,
            "total_stock": _as_int(row.total_stock) if row is not None else 0,
        }

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def apply_stock_delta(
        self,
        item_ref: ItemRef,
        warehouse_id: str,
        delta: int,
        change_type: str,
        actor_id: Optional[str] = None,
    ) -> StockDeltaResult:
        """
        Apply a signed quantity delta to one item's stock row in one warehouse.

        Raises:
        - InsufficientStockError when the resulting quantity would be negative.
        - NotFoundError when no stock row exists and the delta is not positive.
          A positive delta (return) creates the stock row instead.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("delta must be an integer")
        if not warehouse_id:
            raise ValidationError("warehouse_id is required")

        actor = actor_id or DEFAULT_ACTOR
        with self._connect() as conn:
            try:
                with conn.begin():
                    row = self._find_stock_row(conn, item_ref, warehouse_id)
                    if row is None:
                        if delta <= 0:
                            raise NotFoundError(
                                f"item {item_ref.key} has no stock record in warehouse {warehouse_id}",
                                item=item_ref.key,
                                warehouse_id=warehouse_id,
                            )
                        self._insert_stock_row(conn, item_ref, warehouse_id, delta)
                        result = StockDeltaResult(
                            item_key=item_ref.key,
                            warehouse_id=str(warehouse_id),
                            previous_stock=0,
                            new_stock=delta,
                            created_stock_row=True,
                        )
                        notes = "Initial stock from POS return"
                    else:
                        before = _as_int(row.quantity)
                        after = before + delta
                        if after < 0:
                            raise InsufficientStockError(
                                f"Insufficient stock. Available: {before}, Trying to reduce: {abs(delta)}",
                                item=item_ref.key,
                                warehouse_id=warehouse_id,
                                available=before,
                            )
                        conn.execute(
                            text(
                                "UPDATE stock_items SET quantity = :quantity, updated_at = CURRENT_TIMESTAMP "
                                "WHERE id = :id"
                            ),
                            {"quantity": after, "id": row.id},
                        )
                        result = StockDeltaResult(
                            item_key=item_ref.key,
                            warehouse_id=str(warehouse_id),
                            previous_stock=before,
                            new_stock=after,
                        )
                        if change_type == "sale":
                            notes = f"POS Sale - Reduced by {abs(delta)}"
                        elif change_type == "return":
                            notes = f"POS Return - Added {delta}"
                        else:
                            notes = f"POS Adjustment - {delta:+d}"

                    result.transaction_id = self._write_transaction_log(
                        conn,
                        item_ref=item_ref,
                        warehouse_id=warehouse_id,
                        action=change_type if not result.created_stock_row else "manual_adjustment",
                        delta=delta,
                        before=result.previous_stock,
                        after=result.new_stock,
                        actor=actor,
                        notes=notes,
                    )
            except SyncError:
                raise
            except DBAPIError as exc:
                raise QueryError(f"inventory stock update failed: {exc}") from exc
        return result

    @staticmethod
    def _find_stock_row(conn, item_ref: ItemRef, warehouse_id):
        if item_ref.variant_id is None:
            sql = (
                "SELECT id, quantity FROM stock_items "
                "WHERE product_id = :product_id AND variant_id IS NULL "
                "AND warehouse_id = :warehouse_id AND is_deleted = 0 ORDER BY id LIMIT 1"
            )
        else:
            sql = (
                "SELECT id, quantity FROM stock_items "
                "WHERE product_id = :product_id AND variant_id = :variant_id "
                "AND warehouse_id = :warehouse_id AND is_deleted = 0 ORDER BY id LIMIT 1"
            )
        return conn.execute(
            text(sql),
            {
                "product_id": item_ref.product_id,
                "variant_id": item_ref.variant_id,
                "warehouse_id": warehouse_id,
            },
        ).first()

    @staticmethod
    def _insert_stock_row(conn, item_ref: ItemRef, warehouse_id, quantity: int) -> None:
        conn.execute(
            text(
                "INSERT INTO stock_items (product_id, variant_id, warehouse_id, quantity, is_deleted, "
                "created_at, updated_at) VALUES (:product_id, :variant_id, :warehouse_id, :quantity, 0, "
                "CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)"
            ),
            {
                "product_id": item_ref.product_id,
                "variant_id": item_ref.variant_id,
                "warehouse_id": warehouse_id,
                "quantity": quantity,
            },
        )

    @staticmethod
    def _write_transaction_log(conn, *, item_ref, warehouse_id, action, delta, before, after, actor, notes):
        try:
            with conn.begin_nested():
                res = conn.execute(
                    text(
                        "INSERT INTO inventory_transaction_logs (product_id, action, change_amount, "
                        "quantity_before, quantity_after, performed_by_id, notes, created_at) "
                        "VALUES (:product_id, :action, :change_amount, :before, :after, :actor, :notes, "
                        "CURRENT_TIMESTAMP)"
                    ),
                    {
                        "product_id": item_ref.product_id,
                        "action": action,
                        "change_amount": delta,
                        "before": before,
                        "after": after,
                        "actor": actor,
                        "notes": f"{notes} (warehouse {warehouse_id})",
                    },
                )
        except DBAPIError as exc:
            logger.warning(
                "Inventory transaction log write failed for item %s in warehouse %s: %s",
                item_ref.key,
                warehouse_id,
                exc,
            )
            return None
        return str(res.lastrowid) if res.lastrowid else None
