# Overview: Flask API routes for recording local stock movements from POS sales, returns and adjustments.

from flask import Blueprint, jsonify, request

from ..decorators import json_errors, request_actor, request_json
from ..extensions import db, sync_engine
from ..models import StockChange
from ..services.errors import ValidationError


stock_changes_bp = Blueprint("stock_changes", __name__, url_prefix="/api/stock-changes")


@stock_changes_bp.post("")
@json_errors("track stock change")
def track_change():
    data = request_json()
    quantity = data.get("quantity_change")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity_change must be an integer")
    reference = None
    if data.get("reference_id") is not None:
        reference = {"id": data["reference_id"], "type": data.get("reference_type")}
    result = sync_engine.context.track_change(
        data.get("product_id"),
        quantity,
        data.get("change_type"),
        reference=reference,
        actor=request_actor(data),
        notes=data.get("notes"),
        defer_push=bool(data.get("defer_push", False)),
    )
    return jsonify(result), 201


@stock_changes_bp.post("/sale")
@json_errors("record sale stock changes")
def record_sale():
    data = request_json()
    sale_id = data.get("sale_id")
    items = data.get("items")
    if sale_id is None:
        raise ValidationError("sale_id is required")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    result = sync_engine.context.process_sale_stock_changes(sale_id, items, actor=request_actor(data))
    return jsonify(result), 201 if result["success"] else 207


@stock_changes_bp.get("")
@json_errors("list stock changes")
def list_changes():
    q = db.session.query(StockChange)
    warehouse_id = request.args.get("warehouse_id")
    if warehouse_id:
        q = q.filter(StockChange.warehouse_id == warehouse_id)
    synced = request.args.get("synced")
    if synced is not None:
        q = q.filter(StockChange.synced_to_inventory.is_(synced.lower() in {"1", "true", "yes"}))
    try:
        limit = max(1, min(int(request.args.get("limit", 100)), 500))
    except ValueError as exc:
        raise ValidationError("limit must be an integer") from exc
    rows = q.order_by(StockChange.created_at.desc(), StockChange.id.desc()).limit(limit).all()
    return jsonify({"items": [r.to_dict() for r in rows], "count": len(rows)}), 200
