# Overview: Flask API routes for sync status, configuration, ledger queries and operator-triggered syncs.

from flask import Blueprint, jsonify, request

from ..decorators import json_errors, request_actor, request_json
from ..extensions import sync_engine
from ..services import inventory_config_service as settings
from ..services import sync_ledger_service as ledger
from ..services.errors import ValidationError


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


@sync_bp.get("/status")
@json_errors("load sync status")
def get_status():
    status = sync_engine.orchestrator.sync_status()
    status["scheduler"] = sync_engine.scheduler_status()
    return jsonify(status), 200


@sync_bp.get("/config")
@json_errors("load sync config")
def get_config():
    return jsonify(settings.get_full_config()), 200


@sync_bp.put("/config")
@json_errors("update sync config")
def update_config():
    data = request_json()
    if "enabled" in data:
        if not isinstance(data["enabled"], bool):
            raise ValidationError("enabled must be a boolean")
        settings.set_sync_enabled(data["enabled"])
    if "auto_update_on_sale" in data:
        if not isinstance(data["auto_update_on_sale"], bool):
            raise ValidationError("auto_update_on_sale must be a boolean")
        settings.set_auto_update_on_sale(data["auto_update_on_sale"])
    if "sync_interval_seconds" in data:
        interval = data["sync_interval_seconds"]
        if isinstance(interval, bool) or not isinstance(interval, int):
            raise ValidationError("sync_interval_seconds must be an integer")
        settings.set_sync_interval(interval)
    return jsonify({"success": True, "config": settings.get_sync_config()}), 200


@sync_bp.get("/history")
@json_errors("load sync history")
def get_history():
    records = sync_engine.orchestrator.history(
        entity_type=request.args.get("entity_type") or None,
        entity_id=request.args.get("entity_id") or None,
        limit=_int_arg("limit", 50),
    )
    return jsonify({"items": records, "count": len(records)}), 200


@sync_bp.get("/stats")
@json_errors("load sync stats")
def get_stats():
    return jsonify(sync_engine.orchestrator.stats(request.args.get("time_range", "day"))), 200


@sync_bp.get("/pending")
@json_errors("load pending syncs")
def get_pending():
    records = ledger.list_pending(
        entity_type=request.args.get("entity_type") or None,
        direction=request.args.get("direction") or None,
    )
    return jsonify({"items": [r.to_dict() for r in records], "count": len(records)}), 200


@sync_bp.post("/manual")
@json_errors("run manual sync")
def run_manual_sync():
    data = request_json()
    options = {key: data[key] for key in ("warehouse_id", "incremental") if key in data}
    result = sync_engine.orchestrator.manual_sync(actor=request_actor(data), options=options)
    return jsonify(result.to_dict()), 200 if result.error is None else 502


@sync_bp.post("/push")
@json_errors("push stock changes")
def push_stock_changes():
    data = request_json()
    warehouse_id = data.get("warehouse_id") or sync_engine.context.current()["id"]
    if not warehouse_id:
        raise ValidationError("No warehouse selected")
    result = sync_engine.orchestrator.push_stock_changes(
        warehouse_id,
        sync_type="manual",
        actor=request_actor(data),
        trigger="operator",
        respect_backoff=False,
    )
    status = 409 if result.status == "skipped" else 200
    return jsonify(result.to_dict()), status


@sync_bp.post("/test-connection")
@json_errors("test inventory connection")
def test_connection():
    result = sync_engine.orchestrator.test_connection()
    return jsonify(result), 200 if result["connected"] else 502


@sync_bp.post("/retry/process")
@json_errors("process pending retries")
def process_retries():
    result = sync_engine.retry_scheduler.process_pending()
    if result is None:
        return jsonify({"success": False, "error": "Sync already in progress", "error_code": "sync_in_progress"}), 409
    return jsonify(result), 200


@sync_bp.post("/retry/<int:record_id>")
@json_errors("force retry")
def force_retry(record_id: int):
    result = sync_engine.retry_scheduler.force_retry(record_id)
    return jsonify(result), 200


@sync_bp.post("/reset-failed")
@json_errors("reset failed syncs")
def reset_failed():
    data = request_json()
    count = sync_engine.retry_scheduler.reset_failed_syncs(data.get("entity_type") or None)
    return jsonify({"success": True, "reset_count": count}), 200
