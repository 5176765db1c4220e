# Overview: Flask API routes for reconciliation; exposes scans, repairs and ledger checks.

# backend/storefront/routes/reconciliation.py

from datetime import timedelta

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import OperationalError

from ..services import reconciliation_service, incident_service
from ..validation import ValidationError, ConflictError, NotFoundError, coerce_int


reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


@reconciliation_bp.get("/orders")
def scan_orders_route():
    """
    Orders left between checkout stages, plus open incidents.

    Query: store_id (optional), older_than_minutes (optional).
    """
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1, required=False)
        minutes = coerce_int("older_than_minutes", request.args.get("older_than_minutes"), minimum=0, required=False)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    older_than = timedelta(minutes=minutes) if minutes is not None else None
    diagnoses = reconciliation_service.scan_orders(store_id, older_than=older_than)
    incidents = incident_service.list_open_incidents(store_id)
    return jsonify({
        "orders": [d.to_dict() for d in diagnoses],
        "incidents": [i.to_dict() for i in incidents],
    }), 200


@reconciliation_bp.post("/orders/<int:order_id>/repair")
def repair_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        user_id = coerce_int("user_id", data.get("user_id"), minimum=1, required=False)
        result = reconciliation_service.repair_order(order_id, user_id=user_id)
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except OperationalError:
        raise
    except Exception:
        current_app.logger.exception("Failed to repair order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.get("/ledgers")
def verify_ledgers_route():
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    inventory = reconciliation_service.verify_inventory_ledger(store_id)
    loyalty = reconciliation_service.verify_loyalty_ledger(store_id)
    return jsonify({
        "ok": not inventory and not loyalty,
        "inventory_mismatches": inventory,
        "loyalty_mismatches": loyalty,
    }), 200
