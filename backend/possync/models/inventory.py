from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_OUT_OF_SYNC = "out_of_sync"

CHANGE_TYPES = ("sale", "return", "adjustment")


class Product(db.Model):
    """
    Local POS cache of an item owned by the external inventory system.

    SYNC IDENTITY:
    - sync_id = "<external item key>_<warehouse id>", unique per (item, warehouse).
    - external item key is the inventory product id ("42") or, for variants,
      "<product id>-v<variant id>" ("42-v7").
    - Products with sync_id NULL were created locally and are never touched
      by reconciliation.

    LIFECYCLE:
    - Items missing from the latest full reconciliation of their warehouse are
      deactivated (is_active=False, sync_status='out_of_sync'), never deleted,
      so local sales history keeps its references.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sync_id", name="uq_products_sync_id"),
        db.Index("ix_products_warehouse_active", "warehouse_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sync_id = db.Column(db.String(128), nullable=True)

    # External identity (needed to address the item on outbound pushes)
    stock_item_id = db.Column(db.String(64), nullable=True, index=True)
    variant_id = db.Column(db.String(64), nullable=True)
    item_type = db.Column(db.String(16), nullable=False, default="product")
    is_variant = db.Column(db.Boolean, nullable=False, default=False)
    variant_name = db.Column(db.String(255), nullable=True)
    parent_product_id = db.Column(db.String(64), nullable=True)

    sku = db.Column(db.String(64), nullable=True, index=True)
    barcode = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)

    category_name = db.Column(db.String(255), nullable=True)
    supplier_name = db.Column(db.String(255), nullable=True)

    warehouse_id = db.Column(db.String(64), nullable=True, index=True)
    warehouse_name = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    sync_status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_PENDING, index=True)
    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sync_id={self.sync_id!r} name={self.name!r} stock={self.stock}>"

    @property
    def is_linked(self) -> bool:
        return self.stock_item_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_id": self.sync_id,
            "stock_item_id": self.stock_item_id,
            "variant_id": self.variant_id,
            "item_type": self.item_type,
            "is_variant": self.is_variant,
            "variant_name": self.variant_name,
            "parent_product_id": self.parent_product_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "cost_price_cents": self.cost_price_cents,
            "stock": self.stock,
            "min_stock": self.min_stock,
            "category_name": self.category_name,
            "supplier_name": self.supplier_name,
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse_name,
            "is_active": self.is_active,
            "sync_status": self.sync_status,
            "last_sync_at": to_utc_z(self.last_sync_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockChange(db.Model):
    """
    One local stock movement awaiting (or confirmed by) an outbound push.

    INVARIANTS:
    - quantity_after = max(0, quantity_before + quantity_change)
    - synced_to_inventory flips False -> True exactly once, after the adapter
      confirmed the delta; it is never reverted.
    - Failed pushes leave the row unsynced and schedule next_attempt_at with
      the same backoff as ledger retries.
    """
    __tablename__ = "stock_changes"
    __table_args__ = (
        db.Index("ix_stock_changes_wh_synced_created", "warehouse_id", "synced_to_inventory", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.String(64), nullable=False, index=True)

    quantity_change = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    change_type = db.Column(db.String(16), nullable=False, index=True)

    reference_id = db.Column(db.String(64), nullable=True, index=True)
    reference_type = db.Column(db.String(32), nullable=True)

    performed_by_id = db.Column(db.String(64), nullable=True)
    performed_by_name = db.Column(db.String(128), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    synced_to_inventory = db.Column(db.Boolean, nullable=False, default=False, index=True)
    sync_date = db.Column(db.DateTime(timezone=True), nullable=True)
    inventory_transaction_id = db.Column(db.String(64), nullable=True)

    sync_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sync_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_changes", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "quantity_change": self.quantity_change,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "change_type": self.change_type,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "performed_by_id": self.performed_by_id,
            "performed_by_name": self.performed_by_name,
            "notes": self.notes,
            "synced_to_inventory": self.synced_to_inventory,
            "sync_date": to_utc_z(self.sync_date),
            "inventory_transaction_id": self.inventory_transaction_id,
            "sync_attempts": self.sync_attempts,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "last_sync_error": self.last_sync_error,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
