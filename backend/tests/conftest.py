"""
Pytest fixtures for possync backend tests.

Provides the in-memory local store, a fake external inventory adapter that
counts calls, and a throwaway SQLite file carrying the external schema.
"""

import copy

import pytest
from sqlalchemy import create_engine, text

from possync import create_app
from possync.extensions import db, sync_engine
from possync.models import Product
from possync.models.inventory import SYNC_STATUS_SYNCED
from possync.services import inventory_config_service
from possync.services.errors import InsufficientStockError, NotFoundError
from possync.services.inventory_adapter import ExternalItem, StockDeltaResult


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    missing = tmp_path_factory.mktemp("inventory") / "missing.db"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'INVENTORY_DATABASE_URL': f'sqlite:///{missing}',
        'SYNC_SCHEDULER_AUTOSTART': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class FakeInventoryAdapter:
    """
    In-memory stand-in for ExternalInventoryAdapter.

    Every public call is appended to `calls`. Set `fail_with[method]` to make a
    method raise, or `delta_errors[item_key]` to fail one item's stock push.
    """

    def __init__(self):
        self.warehouses = {}
        self.items = {}
        self.stock = {}
        self.calls = []
        self.fail_with = {}
        self.delta_errors = {}
        self.on_list_active_items = None
        self.display_url = "fake://inventory"

    # -- test helpers ------------------------------------------------------

    def add_warehouse(self, warehouse_id, name, *, active=True, type="store"):
        self.warehouses[str(warehouse_id)] = {
            "id": str(warehouse_id),
            "name": name,
            "type": type,
            "location": None,
            "is_active": active,
        }
        self.items.setdefault(str(warehouse_id), [])

    def add_item(self, warehouse_id, product_id, name, *, stock=0, price="9.99", variant_id=None, **extra):
        item = ExternalItem(
            product_id=str(product_id),
            name=name,
            item_type="variant" if variant_id is not None else "product",
            variant_id=str(variant_id) if variant_id is not None else None,
            parent_product_id=str(product_id) if variant_id is not None else None,
            price=price,
            warehouse_id=str(warehouse_id),
            stock=stock,
            **extra,
        )
        self.items.setdefault(str(warehouse_id), []).append(item)
        self.stock[(item.key, str(warehouse_id))] = stock
        return item

    def remove_item(self, warehouse_id, key):
        self.items[str(warehouse_id)] = [i for i in self.items[str(warehouse_id)] if i.key != key]

    def count(self, method=None):
        if method is None:
            return len(self.calls)
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method, *args):
        self.calls.append((method, args))
        exc = self.fail_with.get(method)
        if exc is not None:
            raise exc

    # -- adapter surface ---------------------------------------------------

    def check_connection(self):
        try:
            self._record("check_connection")
        except Exception as exc:
            return {"connected": False, "message": f"Failed to connect: {exc}"}
        return {"connected": True, "message": "Inventory database connected successfully"}

    def list_active_items(self, warehouse_id=None, since=None):
        self._record("list_active_items", warehouse_id, since)
        if self.on_list_active_items is not None:
            self.on_list_active_items(warehouse_id, since)
        return [copy.copy(i) for i in self.items.get(str(warehouse_id), [])]

    def list_warehouses(self, active_only=False):
        self._record("list_warehouses", active_only)
        return [
            dict(w) for w in self.warehouses.values()
            if w["is_active"] or not active_only
        ]

    def get_warehouse(self, warehouse_id):
        self._record("get_warehouse", warehouse_id)
        warehouse = self.warehouses.get(str(warehouse_id))
        return dict(warehouse) if warehouse else None

    def warehouse_stock_summary(self, warehouse_id):
        self._record("warehouse_stock_summary", warehouse_id)
        rows = [qty for (key, wid), qty in self.stock.items() if wid == str(warehouse_id)]
        return {"item_count": len(rows), "total_stock": sum(rows)}

    def apply_stock_delta(self, item_ref, warehouse_id, delta, change_type, actor_id=None):
        self._record("apply_stock_delta", item_ref, warehouse_id, delta, change_type, actor_id)
        exc = self.delta_errors.get(item_ref.key)
        if exc is not None:
            raise exc
        slot = (item_ref.key, str(warehouse_id))
        before = self.stock.get(slot)
        if before is None:
            if delta <= 0:
                raise NotFoundError(f"item {item_ref.key} has no stock record in warehouse {warehouse_id}")
            self.stock[slot] = delta
            return StockDeltaResult(item_ref.key, str(warehouse_id), 0, delta, True, str(len(self.calls)))
        if before + delta < 0:
            raise InsufficientStockError(
                f"Insufficient stock. Available: {before}, Trying to reduce: {abs(delta)}"
            )
        self.stock[slot] = before + delta
        for item in self.items.get(str(warehouse_id), []):
            if item.key == item_ref.key:
                item.stock = before + delta
        return StockDeltaResult(item_ref.key, str(warehouse_id), before, before + delta, False, str(len(self.calls)))


@pytest.fixture(scope='function')
def fake_adapter(app, db_session):
    """Rebind the sync engine to a fresh fake adapter for each test."""
    adapter = FakeInventoryAdapter()
    sync_engine.init_app(app, adapter=adapter)
    yield adapter
    sync_engine.stop_schedulers()


@pytest.fixture(scope='function')
def engine(fake_adapter):
    """The process-wide sync engine, wired to the fake adapter."""
    return sync_engine


@pytest.fixture(scope='function')
def no_auto_push(db_session):
    """Keep sales from pushing on their own so tests drive the push."""
    inventory_config_service.set_auto_update_on_sale(False)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory for local products linked to an external item."""
    def _make(product_id="7", warehouse_id="W1", *, stock=10, name=None, variant_id=None, linked=True, **extra):
        key = f"{product_id}-v{variant_id}" if variant_id is not None else str(product_id)
        product = Product(
            sync_id=f"{key}_{warehouse_id}" if linked else None,
            stock_item_id=str(product_id) if linked else None,
            variant_id=str(variant_id) if variant_id is not None else None,
            name=name or f"Product {key}",
            price_cents=extra.pop("price_cents", 999),
            stock=stock,
            warehouse_id=warehouse_id,
            warehouse_name=extra.pop("warehouse_name", f"Warehouse {warehouse_id}"),
            sync_status=extra.pop("sync_status", SYNC_STATUS_SYNCED),
            **extra,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


EXTERNAL_SCHEMA = [
    """CREATE TABLE categories (id INTEGER PRIMARY KEY, name TEXT)""",
    """CREATE TABLE suppliers (id INTEGER PRIMARY KEY, name TEXT)""",
    """CREATE TABLE product_supplier (product_id INTEGER, supplier_id INTEGER)""",
    """CREATE TABLE products (
        id INTEGER PRIMARY KEY, name TEXT, sku TEXT, net_price REAL, description TEXT,
        barcode TEXT, cost_per_item REAL, low_stock_threshold INTEGER, category_id INTEGER,
        is_published INTEGER DEFAULT 1, is_deleted INTEGER DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP, updated_at TEXT DEFAULT CURRENT_TIMESTAMP)""",
    """CREATE TABLE product_variants (
        id INTEGER PRIMARY KEY, product_id INTEGER, name TEXT, sku TEXT, net_price REAL,
        barcode TEXT, cost_per_item REAL, is_deleted INTEGER DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP, updated_at TEXT DEFAULT CURRENT_TIMESTAMP)""",
    """CREATE TABLE warehouses (
        id INTEGER PRIMARY KEY, name TEXT, type TEXT, location TEXT,
        is_active INTEGER DEFAULT 1, is_deleted INTEGER DEFAULT 0)""",
    """CREATE TABLE stock_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT, product_id INTEGER, variant_id INTEGER,
        warehouse_id INTEGER, quantity INTEGER, is_deleted INTEGER DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP, updated_at TEXT DEFAULT CURRENT_TIMESTAMP)""",
    """CREATE TABLE inventory_transaction_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT, product_id INTEGER, action TEXT,
        change_amount INTEGER, quantity_before INTEGER, quantity_after INTEGER,
        performed_by_id TEXT, notes TEXT, created_at TEXT)""",
]


@pytest.fixture(scope='function')
def external_db(tmp_path):
    """
    Throwaway external inventory database.

    Two warehouses (1 Main, 2 Outlet; 3 inactive), two products, one variant.
    Returns (url, engine) so tests can inspect or reshape the external side.
    """
    path = tmp_path / "inventory.db"
    url = f"sqlite:///{path}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for ddl in EXTERNAL_SCHEMA:
            conn.execute(text(ddl))
        conn.execute(text("INSERT INTO categories (id, name) VALUES (1, 'Drinks')"))
        conn.execute(text("INSERT INTO suppliers (id, name) VALUES (1, 'Acme Supply')"))
        conn.execute(text("INSERT INTO product_supplier (product_id, supplier_id) VALUES (42, 1)"))
        conn.execute(text(
            "INSERT INTO warehouses (id, name, type, is_active) VALUES "
            "(1, 'Main', 'store', 1), (2, 'Outlet', 'store', 1), (3, 'Closed', 'store', 0)"
        ))
        conn.execute(text(
            "INSERT INTO products (id, name, sku, net_price, cost_per_item, low_stock_threshold, category_id) VALUES "
            "(42, 'Cola', 'COLA-1', 9.99, 4.5, 3, 1), (43, 'Chips', 'CHIP-1', 2.5, 1.0, 0, NULL)"
        ))
        conn.execute(text(
            "INSERT INTO product_variants (id, product_id, name, sku, net_price) VALUES (7, 42, 'Large', 'COLA-L', 12.5)"
        ))
        conn.execute(text(
            "INSERT INTO stock_items (product_id, variant_id, warehouse_id, quantity) VALUES "
            "(42, NULL, 1, 10), (42, NULL, 2, 4), (42, 7, 1, 6), (43, NULL, 2, 8)"
        ))
    yield url, engine
    engine.dispose()
