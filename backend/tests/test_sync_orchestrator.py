# Overview: Pytest coverage for the sync orchestrator: inbound passes, outbound pushes and the single-flight guard.

import time
from datetime import timedelta

import pytest

from possync.models import Product, StockChange, SyncRecord
from possync.services import inventory_config_service as settings
from possync.services.errors import (
    InsufficientStockError,
    InventoryConnectionError,
    QueryError,
    SyncInProgressError,
    ValidationError,
)
from possync.time_utils import utcnow


@pytest.fixture
def two_warehouses(fake_adapter):
    fake_adapter.add_warehouse("W1", "Store A")
    fake_adapter.add_warehouse("W2", "Store B")
    fake_adapter.add_warehouse("W3", "Closed", active=False)
    fake_adapter.add_item("W1", 42, "Cola", stock=10)
    fake_adapter.add_item("W2", 42, "Cola", stock=4)
    fake_adapter.add_item("W2", 43, "Chips", stock=8)
    return fake_adapter


def _ledger(db_session, entity_type):
    return db_session.query(SyncRecord).filter_by(entity_type=entity_type).order_by(SyncRecord.id).all()


class TestInbound:
    def test_auto_sync_reconciles_active_warehouses(self, engine, two_warehouses, db_session):
        result = engine.orchestrator.auto_sync()

        assert result.success is True
        assert result.to_dict()["summary"]["created"] == 3
        assert {p.sync_id for p in db_session.query(Product).all()} == {"42_W1", "42_W2", "43_W2"}
        batch = _ledger(db_session, "ProductBatch")[0]
        assert batch.status == "success"
        assert batch.sync_type == "auto"
        assert batch.entity_id.startswith("batch-")
        assert batch.items_succeeded == 3
        assert settings.get_sync_config()["last_sync"] is not None
        assert settings.get_full_config()["connection_status"] == "connected"

    def test_auto_sync_connection_failure_is_recorded(self, engine, fake_adapter, db_session):
        fake_adapter.fail_with["list_warehouses"] = InventoryConnectionError("offline")

        result = engine.orchestrator.auto_sync()

        batch = _ledger(db_session, "ProductBatch")[0]
        assert result.success is False
        assert result.error["error_code"] == "connection_error"
        assert batch.status == "pending"
        assert batch.next_retry_at is not None
        assert settings.get_full_config()["connection_status"] == "disconnected"

    def test_one_failing_warehouse_is_partial(self, engine, two_warehouses, db_session):
        original = two_warehouses.list_active_items

        def flaky(warehouse_id=None, since=None):
            if warehouse_id == "W2":
                raise InventoryConnectionError("W2 unreachable")
            return original(warehouse_id, since)

        two_warehouses.list_active_items = flaky

        result = engine.orchestrator.auto_sync()

        assert result.success is False
        assert [w["warehouse_id"] for w in result.failed_warehouses] == ["W2"]
        assert _ledger(db_session, "ProductBatch")[0].status == "partial"
        warehouse_record = _ledger(db_session, "Warehouse")[0]
        assert warehouse_record.entity_id == "W2"
        assert warehouse_record.status == "pending"

    def test_item_failures_get_product_records(self, engine, fake_adapter, db_session):
        fake_adapter.add_warehouse("W1", "Store A")
        fake_adapter.add_item("W1", 42, "Cola", stock=10)
        fake_adapter.add_item("W1", 43, "Broken", stock=1, price="n/a")

        result = engine.orchestrator.auto_sync()

        assert result.to_dict()["summary"]["failed"] == 1
        assert _ledger(db_session, "ProductBatch")[0].status == "partial"
        item_record = _ledger(db_session, "Product")[0]
        assert item_record.entity_id == "43_W1"
        assert item_record.status == "failed"

    def test_manual_sync_single_warehouse(self, engine, two_warehouses, db_session):
        result = engine.orchestrator.manual_sync(actor={"id": 1, "username": "admin"}, options={"warehouse_id": "W2"})

        assert result.success is True
        assert result.to_dict()["summary"]["created"] == 2
        batch = _ledger(db_session, "ProductBatch")[0]
        assert batch.sync_type == "manual"
        assert batch.performed_by_username == "admin"
        assert batch.entity_id.startswith("manual-")
        # Single-warehouse passes do not move the global last-sync mark
        assert settings.get_sync_config()["last_sync"] is None

    def test_manual_incremental_uses_last_sync(self, engine, two_warehouses):
        engine.orchestrator.manual_sync()
        seen = []
        two_warehouses.on_list_active_items = lambda wid, since: seen.append(since)

        result = engine.orchestrator.manual_sync(options={"incremental": True})

        assert result.incremental is True
        assert seen and all(s is not None for s in seen)

    def test_manual_sync_validates_options(self, engine):
        with pytest.raises(ValidationError):
            engine.orchestrator.manual_sync(options={"incremental": "yes"})
        with pytest.raises(ValidationError):
            engine.orchestrator.manual_sync(options={"warehouse_id": " "})


    def test_all_warehouses_failing_leaves_only_the_batch_record(self, engine, two_warehouses, db_session):
        two_warehouses.fail_with["get_warehouse"] = InventoryConnectionError("offline")

        result = engine.orchestrator.auto_sync()

        assert len(result.failed_warehouses) == 2
        assert _ledger(db_session, "ProductBatch")[0].status == "pending"
        assert _ledger(db_session, "Warehouse") == []


def _slow_on(adapter, warehouse_id, seconds):
    def hook(wid, since):
        if wid == warehouse_id:
            time.sleep(seconds)
    adapter.on_list_active_items = hook


class TestDeadline:
    def test_inbound_overrun_records_every_unreached_warehouse(self, engine, fake_adapter, db_session):
        for wid in ("W1", "W2", "W3"):
            fake_adapter.add_warehouse(wid, f"Store {wid}")
            fake_adapter.add_item(wid, 42, "Cola", stock=5)
        _slow_on(fake_adapter, "W2", 0.3)
        engine.orchestrator.timeout_seconds = 0.2

        result = engine.orchestrator.auto_sync()

        assert result.error["error_code"] == "timeout"
        assert [w["warehouse_id"] for w in result.failed_warehouses] == ["W2", "W3"]
        assert _ledger(db_session, "ProductBatch")[0].status == "partial"
        records = _ledger(db_session, "Warehouse")
        assert [r.entity_id for r in records] == ["W2", "W3"]
        assert all(r.status == "pending" and r.error_code == "timeout" for r in records)
        assert all(r.next_retry_at is not None for r in records)
        assert {p.sync_id for p in db_session.query(Product).all()} == {"42_W1"}

    def test_inbound_overrun_on_first_warehouse_fails_the_batch(self, engine, fake_adapter, db_session):
        fake_adapter.add_warehouse("W1", "Store A")
        fake_adapter.add_warehouse("W2", "Store B")
        _slow_on(fake_adapter, "W1", 0.3)
        engine.orchestrator.timeout_seconds = 0.2

        engine.orchestrator.auto_sync()

        batch = _ledger(db_session, "ProductBatch")[0]
        assert batch.status == "pending"
        assert batch.error_code == "timeout"
        assert batch.next_retry_at - utcnow() > timedelta(minutes=4)
        assert _ledger(db_session, "Warehouse") == []

    def test_reconcile_overrun_is_a_ledger_failure(self, engine, fake_adapter, db_session):
        fake_adapter.add_warehouse("W1", "Store A")
        _slow_on(fake_adapter, "W1", 0.3)
        engine.orchestrator.timeout_seconds = 0.2

        outcome = engine.orchestrator.run_reconcile("W1")

        record = _ledger(db_session, "Warehouse")[0]
        assert outcome["success"] is False
        assert outcome["error_code"] == "timeout"
        assert record.status == "pending"
        assert record.next_retry_at is not None

    def test_push_overrun_leaves_later_rows_unsynced(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        fake_adapter.add_item("W1", 7, "Cola", stock=10)
        product = make_product("7", "W1")
        for _ in range(3):
            engine.context.track_change(product.id, -1, "sale")
        original = fake_adapter.apply_stock_delta

        def slow(ref, warehouse_id, delta, change_type, actor_id=None):
            time.sleep(0.3)
            return original(ref, warehouse_id, delta, change_type, actor_id=actor_id)

        fake_adapter.apply_stock_delta = slow
        engine.orchestrator.timeout_seconds = 0.2

        result = engine.orchestrator.push_stock_changes("W1")

        changes = db_session.query(StockChange).order_by(StockChange.id).all()
        assert result.status == "partial"
        assert result.error["error_code"] == "timeout"
        assert [c.synced_to_inventory for c in changes] == [True, False, False]
        assert all(c.sync_attempts == 0 and c.next_attempt_at is None for c in changes[1:])
        assert _ledger(db_session, "StockChangeBatch")[0].status == "partial"

        fake_adapter.apply_stock_delta = original
        engine.orchestrator.timeout_seconds = 60
        engine.orchestrator.push_stock_changes("W1")

        assert fake_adapter.stock[("7", "W1")] == 7

    def test_push_overrun_with_no_success_backs_off(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        fake_adapter.delta_errors["7"] = QueryError("stock_items locked")
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")
        engine.context.track_change(product.id, -1, "sale")
        original = fake_adapter.apply_stock_delta

        def slow(ref, warehouse_id, delta, change_type, actor_id=None):
            time.sleep(0.3)
            return original(ref, warehouse_id, delta, change_type, actor_id=actor_id)

        fake_adapter.apply_stock_delta = slow
        engine.orchestrator.timeout_seconds = 0.2

        result = engine.orchestrator.push_stock_changes("W1")

        first, second = db_session.query(StockChange).order_by(StockChange.id).all()
        batch = _ledger(db_session, "StockChangeBatch")[0]
        assert result.status == "failed"
        assert batch.status == "pending"
        assert batch.error_code == "timeout"
        assert batch.next_retry_at is not None
        assert first.sync_attempts == 1
        assert second.sync_attempts == 0
        assert second.synced_to_inventory is False


class TestSingleFlight:
    def test_auto_sync_while_syncing_makes_no_adapter_calls(self, engine, two_warehouses):
        engine.orchestrator.guard.acquire()
        try:
            assert engine.orchestrator.is_syncing is True
            assert engine.orchestrator.auto_sync() is None
        finally:
            engine.orchestrator.guard.release()

        assert two_warehouses.count() == 0

    def test_auto_sync_during_manual_sync_is_noop(self, engine, two_warehouses):
        nested = []

        def reenter(warehouse_id, since):
            nested.append(engine.orchestrator.auto_sync())

        two_warehouses.on_list_active_items = reenter
        engine.orchestrator.manual_sync()
        calls_during_manual = two_warehouses.count()

        assert nested and all(r is None for r in nested)
        # Only the manual pass talked to the adapter: one list + per warehouse (get + list)
        assert calls_during_manual == 1 + 2 * 2

    def test_manual_sync_while_syncing_raises(self, engine, fake_adapter):
        engine.orchestrator.guard.acquire()
        try:
            with pytest.raises(SyncInProgressError):
                engine.orchestrator.manual_sync()
        finally:
            engine.orchestrator.guard.release()
        assert fake_adapter.count() == 0

    def test_push_while_syncing_is_skipped(self, engine, fake_adapter, make_product, no_auto_push):
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")
        engine.orchestrator.guard.acquire()
        try:
            result = engine.orchestrator.push_stock_changes("W1")
        finally:
            engine.orchestrator.guard.release()

        assert result.status == "skipped"
        assert fake_adapter.count("apply_stock_delta") == 0


class TestOutbound:
    def test_sale_push_scenario(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        fake_adapter.add_item("W1", 7, "Cola", stock=10)
        product = make_product("7", "W1", stock=10)

        engine.context.track_change(product.id, -2, "sale", {"id": 501, "type": "sale"}, {"id": 3, "name": "cashier"})
        change = db_session.query(StockChange).one()
        assert change.synced_to_inventory is False

        result = engine.orchestrator.push_stock_changes("W1")

        db_session.refresh(change)
        db_session.refresh(product)
        assert result.status == "success"
        assert change.synced_to_inventory is True
        assert change.sync_date is not None
        assert product.sync_status == "synced"
        assert product.stock == 8
        assert fake_adapter.stock[("7", "W1")] == 8
        batch = _ledger(db_session, "StockChangeBatch")[0]
        assert batch.status == "success"
        assert batch.payload_dict()["change_ids"] == [change.id]

    def test_synced_changes_are_never_reapplied(self, engine, fake_adapter, make_product, no_auto_push):
        fake_adapter.add_item("W1", 7, "Cola", stock=10)
        product = make_product("7", "W1", stock=10)
        engine.context.track_change(product.id, -1, "sale")
        engine.context.track_change(product.id, -1, "sale")
        engine.orchestrator.push_stock_changes("W1")
        assert fake_adapter.count("apply_stock_delta") == 2

        engine.context.track_change(product.id, -1, "sale")
        engine.orchestrator.push_stock_changes("W1")
        engine.orchestrator.push_stock_changes("W1")

        assert fake_adapter.count("apply_stock_delta") == 3
        assert fake_adapter.stock[("7", "W1")] == 7

    def test_empty_backlog_writes_no_ledger(self, engine, fake_adapter, db_session):
        result = engine.orchestrator.push_stock_changes("W1")

        assert result.status == "empty"
        assert db_session.query(SyncRecord).count() == 0

    def test_mixed_outcome_is_partial_and_failed_item_backs_off(
        self, engine, fake_adapter, make_product, no_auto_push, db_session
    ):
        fake_adapter.add_item("W1", 7, "Cola", stock=10)
        fake_adapter.add_item("W1", 8, "Chips", stock=0)
        cola = make_product("7", "W1")
        chips = make_product("8", "W1")
        engine.context.track_change(cola.id, -1, "sale")
        engine.context.track_change(chips.id, -1, "sale")

        result = engine.orchestrator.push_stock_changes("W1")

        failed = db_session.query(StockChange).filter_by(product_id=chips.id).one()
        assert result.status == "partial"
        assert (result.succeeded, result.failed) == (1, 1)
        assert result.failures[0]["error_code"] == "insufficient_stock"
        assert failed.synced_to_inventory is False
        assert failed.sync_attempts == 1
        assert failed.last_sync_error.startswith("Insufficient stock")
        assert failed.next_attempt_at - utcnow() > timedelta(minutes=4)
        assert _ledger(db_session, "StockChangeBatch")[0].status == "partial"

    def test_all_failed_batch_schedules_retry(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        fake_adapter.delta_errors["7"] = InventoryConnectionError("offline")
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")

        result = engine.orchestrator.push_stock_changes("W1")

        batch = _ledger(db_session, "StockChangeBatch")[0]
        assert result.status == "failed"
        assert batch.status == "pending"
        assert batch.error_code == "batch_failed"

    def test_all_failed_non_retryable_batch_is_terminal(
        self, engine, fake_adapter, make_product, no_auto_push, db_session
    ):
        fake_adapter.delta_errors["7"] = InsufficientStockError("Available: 0")
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")

        engine.orchestrator.push_stock_changes("W1")

        assert _ledger(db_session, "StockChangeBatch")[0].status == "failed"

    def test_scheduled_push_respects_item_backoff(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        fake_adapter.delta_errors["7"] = InventoryConnectionError("offline")
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")
        engine.orchestrator.push_stock_changes("W1")
        del fake_adapter.delta_errors["7"]
        fake_adapter.add_item("W1", 7, "Cola", stock=10)

        scheduled = engine.orchestrator.push_stock_changes("W1")
        operator = engine.orchestrator.push_stock_changes("W1", sync_type="manual", respect_backoff=False)

        assert scheduled.status == "empty"
        assert operator.status == "success"
        assert db_session.query(StockChange).one().synced_to_inventory is True

    def test_unlinked_products_are_marked_synced(self, engine, fake_adapter, make_product, no_auto_push, db_session):
        product = make_product("99", "W1", linked=False)
        engine.context.track_change(product.id, -1, "sale")

        result = engine.orchestrator.push_stock_changes("W1")

        change = db_session.query(StockChange).one()
        assert result.not_linked == 1
        assert change.synced_to_inventory is True
        assert change.notes.endswith("(Not linked to inventory)")
        assert fake_adapter.count("apply_stock_delta") == 0

    def test_batch_size_caps_each_pass(self, engine, fake_adapter, make_product, no_auto_push):
        fake_adapter.add_item("W1", 7, "Cola", stock=100)
        product = make_product("7", "W1", stock=100)
        for _ in range(5):
            engine.context.track_change(product.id, -1, "sale")
        engine.orchestrator.batch_size = 2

        first = engine.orchestrator.push_stock_changes("W1")

        assert first.processed == 2
        assert engine.context.unsynced_count("W1") == 3

    def test_push_requires_warehouse(self, engine):
        with pytest.raises(ValidationError):
            engine.orchestrator.push_stock_changes("")


class TestScheduledTick:
    def test_tick_pushes_backlogs_then_pulls(self, engine, two_warehouses, make_product, no_auto_push, db_session):
        product = make_product("42", "W1", stock=10)
        engine.context.track_change(product.id, -3, "sale")

        result = engine.orchestrator.run_scheduled_tick()

        db_session.refresh(product)
        assert result["pushes"][0]["succeeded"] == 1
        assert two_warehouses.stock[("42", "W1")] == 7
        assert result["inbound"]["success"] is True
        assert product.stock == 7
        assert product.sync_status == "synced"
        methods = [name for name, _ in two_warehouses.calls]
        assert methods.index("apply_stock_delta") < methods.index("list_warehouses")

    def test_tick_skipped_while_syncing(self, engine, two_warehouses):
        engine.orchestrator.guard.acquire()
        try:
            assert engine.orchestrator.run_scheduled_tick() is None
        finally:
            engine.orchestrator.guard.release()
        assert two_warehouses.count() == 0


class TestStatus:
    def test_sync_status(self, engine, fake_adapter, make_product, no_auto_push):
        product = make_product("7", "W1")
        engine.context.track_change(product.id, -1, "sale")

        status = engine.orchestrator.sync_status()

        assert status["is_syncing"] is False
        assert status["unsynced_changes"] == 1
        assert status["pending_syncs"] == 0
        assert status["auto_update_on_sale"] is False

    def test_test_connection_updates_status(self, engine, fake_adapter):
        fake_adapter.fail_with["check_connection"] = InventoryConnectionError("offline")

        result = engine.orchestrator.test_connection()

        assert result["connected"] is False
        assert settings.get_full_config()["connection_status"] == "disconnected"
