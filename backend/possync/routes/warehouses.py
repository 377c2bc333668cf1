# Overview: Flask API routes for listing warehouses and switching the POS warehouse context.

from flask import Blueprint, jsonify

from ..decorators import json_errors, request_actor, request_json
from ..extensions import sync_engine
from ..services.errors import NotFoundError, ValidationError


warehouses_bp = Blueprint("warehouses", __name__, url_prefix="/api/warehouses")


@warehouses_bp.get("")
@json_errors("list warehouses")
def list_warehouses():
    current_id = sync_engine.context.current()["id"]
    warehouses = sync_engine.context.available_warehouses()
    for warehouse in warehouses:
        warehouse["is_current"] = warehouse["id"] == current_id
    return jsonify({"items": warehouses, "count": len(warehouses)}), 200


@warehouses_bp.get("/current")
@json_errors("load current warehouse")
def get_current():
    context = sync_engine.context
    current = context.current()
    return jsonify({"warehouse": current, "unsynced_count": context.unsynced_count(current["id"])}), 200


@warehouses_bp.post("/switch")
@json_errors("switch warehouse")
def switch_warehouse():
    data = request_json()
    force = data.get("force", False)
    if not isinstance(force, bool):
        raise ValidationError("force must be a boolean")
    result = sync_engine.context.switch_to(
        data.get("warehouse_id"),
        data.get("warehouse_name"),
        force,
        actor=request_actor(data),
    )
    return jsonify(result), 200


@warehouses_bp.get("/status")
@warehouses_bp.get("/<warehouse_id>/status")
@json_errors("load warehouse status")
def get_warehouse_status(warehouse_id=None):
    status = sync_engine.context.warehouse_status(warehouse_id)
    if status is None:
        raise NotFoundError("Warehouse not found or not selected")
    return jsonify(status), 200


@warehouses_bp.post("/validate-sale")
@json_errors("validate sale items")
def validate_sale():
    data = request_json()
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    result = sync_engine.context.validate_sale_items(items, data.get("warehouse_id"))
    return jsonify(result), 200
