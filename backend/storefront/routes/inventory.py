# Overview: Flask API routes for inventory; parses input and returns JSON responses.

# backend/storefront/routes/inventory.py
"""
Inventory routes.

Manual stock changes go through the same ledger as sales: every change
appends a movement. Sale movements are only written by the checkout.
"""

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import OperationalError

from ..services import inventory_service
from ..services.inventory_service import InventoryError, VariantNotFoundError
from ..validation import ValidationError, coerce_int, clean_optional_str


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

MANUAL_MOVEMENT_TYPES = ("restock", "adjustment", "return")


@inventory_bp.get("/variants/<int:variant_id>")
def get_variant_stock_route(variant_id: int):
    try:
        stock = inventory_service.get_variant_stock(variant_id)
    except VariantNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"stock": stock}), 200


@inventory_bp.post("/variants/<int:variant_id>/adjust")
def adjust_stock_route(variant_id: int):
    """
    Restock, return or adjust a variant.

    Body: {"delta": int, "reason": "restock"|"adjustment"|"return", "note": str, "user_id": int}
    """
    data = request.get_json(silent=True) or {}

    try:
        delta = coerce_int("delta", data.get("delta"))
        reason = str(data.get("reason") or "adjustment").strip().lower()
        if reason not in MANUAL_MOVEMENT_TYPES:
            raise ValidationError(f"reason must be one of {', '.join(MANUAL_MOVEMENT_TYPES)}")
        note = clean_optional_str(data.get("note"), 255)
        user_id = coerce_int("user_id", data.get("user_id"), minimum=1, required=False)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        result = inventory_service.adjust_stock(variant_id, delta, reason, note=note, user_id=user_id)
        return jsonify({"adjustment": result.to_dict()}), 201
    except VariantNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except InventoryError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except OperationalError:
        raise
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/variants/<int:variant_id>/movements")
def list_movements_route(variant_id: int):
    try:
        limit = coerce_int("limit", request.args.get("limit", 50), minimum=1)
        movements = inventory_service.list_movements(variant_id, limit=min(limit, 500))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except VariantNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@inventory_bp.get("/low-stock")
def low_stock_route():
    """Variants at or below threshold with a suggested reorder quantity."""
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1)
        items = inventory_service.query_low_stock(store_id, policy=request.args.get("policy"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except InventoryError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    return jsonify({"items": items, "count": len(items)}), 200


@inventory_bp.get("/stats")
def stats_route():
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"stats": inventory_service.get_inventory_stats(store_id)}), 200
