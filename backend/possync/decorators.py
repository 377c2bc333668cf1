# Overview: Request helpers and error-mapping decorator for API routes.

from functools import wraps

from flask import current_app, jsonify, request

from .services.errors import (
    SyncError,
    NotFoundError,
    ValidationError,
    SyncInProgressError,
    InventoryConnectionError,
    QueryError,
)


def status_for(exc: SyncError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, SyncInProgressError):
        return 409
    if isinstance(exc, (InventoryConnectionError, QueryError)):
        return 502
    return 500


def json_errors(action: str):
    """
    Translate service errors into JSON responses.

    SyncError subclasses map to 400/404/409/502/500 and carry their
    error_code. Anything else is logged and reported as a bare 500.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except SyncError as exc:
                status = status_for(exc)
                if status >= 500:
                    current_app.logger.warning("%s failed: %s", action, exc)
                return jsonify({"success": False, **exc.to_dict()}), status
            except Exception:
                current_app.logger.exception("Failed to %s", action)
                return jsonify({"success": False, "error": "Internal server error"}), 500
        return decorated_function
    return decorator


def request_json() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def request_actor(data: dict | None = None) -> dict | None:
    """
    Actor for ledger/stock-change attribution.

    Authentication is handled upstream; the caller identifies itself with
    X-User-Id / X-Username headers or a "performed_by" object in the body.
    """
    performed_by = (data or {}).get("performed_by")
    if isinstance(performed_by, dict) and (performed_by.get("id") or performed_by.get("username")):
        return {
            "id": performed_by.get("id"),
            "username": performed_by.get("username") or performed_by.get("name"),
            "name": performed_by.get("name") or performed_by.get("username"),
        }
    user_id = request.headers.get("X-User-Id")
    username = request.headers.get("X-Username")
    if not user_id and not username:
        return None
    return {"id": user_id, "username": username, "name": username}
