# Overview: Flask CLI command groups for running, inspecting and repairing inventory sync.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to possync (PowerShell: $env:FLASK_APP="possync").
# - Use: python -m flask <group> <command> [options]
#
# Sync:
# - python -m flask sync init-settings
#   Seed missing sync configuration keys (idempotent).
# - python -m flask sync run [--warehouse-id W1] [--incremental]
#   Manual inbound sync (all active warehouses unless one is given).
# - python -m flask sync push [--warehouse-id W1]
#   Push unsynced stock changes, ignoring per-change backoff.
# - python -m flask sync retry
#   Replay every retry-eligible ledger record now.
# - python -m flask sync force-retry 42
#   Replay one ledger record regardless of status.
# - python -m flask sync reset-failed [--entity-type Product]
#   Requeue terminal failures with a fresh backoff cycle.
# - python -m flask sync status / history [--entity-type X] [--limit 20]
# - python -m flask sync cleanup --days 30
#   Delete terminal ledger records older than the retention window.
# - python -m flask sync test-connection
#
# Warehouse context:
# - python -m flask warehouse list / current
# - python -m flask warehouse switch W2 --name "Store B" [--force]
#
# Timers:
# - python -m flask scheduler run
#   Run the sync and retry timers in the foreground until Ctrl+C.

import json
import time

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import sync_engine
from .services import inventory_config_service as settings
from .services import sync_ledger_service as ledger
from .services.errors import SyncError


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _actor(username):
    if not username:
        return None
    return {"id": None, "username": username}


@click.group('sync')
def sync_group():
    """Inventory sync operations."""


@sync_group.command('init-settings')
@with_appcontext
def init_settings():
    """Seed the sync configuration store with its default keys."""
    added = settings.ensure_defaults()
    click.echo(f"PASS Seeded {added} missing settings")


@sync_group.command('run')
@click.option('--warehouse-id', default=None, help='Sync one warehouse only')
@click.option('--incremental', is_flag=True, help='Only items changed since the last sync')
@click.option('--user', 'username', default=None, help='Operator username for the ledger')
@with_appcontext
def run_sync(warehouse_id, incremental, username):
    """Run a manual inbound sync."""
    options = {"incremental": incremental}
    if warehouse_id:
        options["warehouse_id"] = warehouse_id
    try:
        result = sync_engine.orchestrator.manual_sync(actor=_actor(username), options=options)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())
    if result.error is not None:
        raise click.ClickException("Sync failed")


@sync_group.command('push')
@click.option('--warehouse-id', default=None, help='Defaults to the current warehouse')
@click.option('--user', 'username', default=None, help='Operator username for the ledger')
@with_appcontext
def push(warehouse_id, username):
    """Push unsynced stock changes to inventory."""
    warehouse_id = warehouse_id or sync_engine.context.current()["id"]
    if not warehouse_id:
        raise click.ClickException("No warehouse selected. Pass --warehouse-id.")
    result = sync_engine.orchestrator.push_stock_changes(
        warehouse_id,
        sync_type="manual",
        actor=_actor(username),
        trigger="operator",
        respect_backoff=False,
    )
    _echo_json(result.to_dict())


@sync_group.command('retry')
@with_appcontext
def retry_pending():
    """Replay retry-eligible ledger records now."""
    result = sync_engine.retry_scheduler.process_pending()
    if result is None:
        raise click.ClickException("Sync already in progress")
    click.echo(f"Processed {result['processed']}: {result['succeeded']} succeeded, {result['failed']} failed")


@sync_group.command('force-retry')
@click.argument('record_id', type=int)
@with_appcontext
def force_retry(record_id):
    """Replay a single ledger record immediately."""
    try:
        result = sync_engine.retry_scheduler.force_retry(record_id)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result)


@sync_group.command('reset-failed')
@click.option('--entity-type', default=None)
@with_appcontext
def reset_failed(entity_type):
    """Requeue failed ledger records."""
    count = sync_engine.retry_scheduler.reset_failed_syncs(entity_type)
    click.echo(f"PASS Reset {count} failed sync records")


@sync_group.command('status')
@with_appcontext
def status():
    """Show sync configuration and queue state."""
    _echo_json(sync_engine.orchestrator.sync_status())


@sync_group.command('history')
@click.option('--entity-type', default=None)
@click.option('--entity-id', default=None)
@click.option('--limit', default=20, show_default=True)
@with_appcontext
def history(entity_type, entity_id, limit):
    """List recent ledger records."""
    records = sync_engine.orchestrator.history(entity_type, entity_id, limit)
    if not records:
        click.echo("No sync records found.")
        return

    click.echo(f"{'ID':<6} {'Direction':<9} {'Entity':<28} {'Type':<7} {'Status':<10} {'Retries':<7} {'Error'}")
    click.echo("=" * 100)
    for r in records:
        entity = f"{r['entity_type']}:{r['entity_id']}"
        click.echo(
            f"{r['id']:<6} {r['sync_direction']:<9} {entity[:28]:<28} {r['sync_type']:<7} "
            f"{r['status']:<10} {r['retry_count']:<7} {r['error_message'] or ''}"
        )


@sync_group.command('cleanup')
@click.option('--days', 'days_to_keep', default=30, show_default=True, help='Retention window in days')
@with_appcontext
def cleanup(days_to_keep):
    """Delete terminal ledger records older than the retention window."""
    if days_to_keep < 1:
        raise click.BadParameter("days must be at least 1", param_hint="--days")
    deleted = ledger.clean_old_records(days_to_keep)
    click.echo(f"PASS Deleted {deleted} sync records older than {days_to_keep} days")


@sync_group.command('test-connection')
@with_appcontext
def test_connection():
    """Check that the inventory database is reachable."""
    result = sync_engine.orchestrator.test_connection()
    if not result["connected"]:
        raise click.ClickException(result["message"])
    click.echo(f"PASS {result['message']}")


@click.group('warehouse')
def warehouse_group():
    """Current warehouse context."""


@warehouse_group.command('list')
@with_appcontext
def list_warehouses():
    """List warehouses known to the inventory system."""
    try:
        warehouses = sync_engine.context.available_warehouses()
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    current_id = sync_engine.context.current()["id"]
    if not warehouses:
        click.echo("No warehouses found.")
        return
    click.echo(f"{'ID':<10} {'Name':<30} {'Type':<12} {'Active':<7} {'Current'}")
    click.echo("=" * 70)
    for w in warehouses:
        marker = "*" if w["id"] == current_id else ""
        click.echo(f"{w['id']:<10} {w['name']:<30} {w['type'] or '':<12} {str(w['is_active']):<7} {marker}")


@warehouse_group.command('current')
@with_appcontext
def current_warehouse():
    """Show the current warehouse and its unsynced backlog."""
    current = sync_engine.context.current()
    if not current["id"]:
        click.echo("No warehouse selected.")
        return
    backlog = sync_engine.context.unsynced_count(current["id"])
    click.echo(f"{current['name']} ({current['id']}) - {backlog} unsynced stock changes")


@warehouse_group.command('switch')
@click.argument('warehouse_id')
@click.option('--name', default=None, help='Display name for the warehouse')
@click.option('--force', is_flag=True, help='Switch even with unsynced stock changes')
@click.option('--user', 'username', default=None, help='Operator username for the ledger')
@with_appcontext
def switch_warehouse(warehouse_id, name, force, username):
    """Switch the POS to another warehouse."""
    try:
        result = sync_engine.context.switch_to(warehouse_id, name, force, actor=_actor(username))
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    if result.get("requires_confirmation"):
        click.echo(
            f"WARN  {result['unsynced_count']} unsynced stock changes in "
            f"{result['current_warehouse']['id']}. Re-run with --force or push them first."
        )
        return
    click.echo(f"PASS {result['message']}: {result['warehouse']['name']} ({result['warehouse']['id']})")
    reconcile = result.get("reconcile")
    if reconcile:
        _echo_json(reconcile)


@click.group('scheduler')
def scheduler_group():
    """Background sync timers."""


@scheduler_group.command('run')
@with_appcontext
def run_scheduler():
    """Run the sync and retry timers in the foreground."""
    app = current_app._get_current_object()
    sync_engine.start_schedulers(app)
    click.echo("Sync schedulers running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        sync_engine.stop_schedulers()


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(sync_group)
    app.cli.add_command(warehouse_group)
    app.cli.add_command(scheduler_group)
