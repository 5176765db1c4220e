# Overview: Flask API routes for checkout; parses input and returns JSON responses.

# backend/storefront/routes/checkout.py
"""
Checkout routes.

The till sends the cart; prices come from the catalog, never the client.
Authentication is handled upstream, so the cashier reference is read from
the payload (user_id).

Status codes:
- 200/201: quote / completed sale (receipt may carry warnings)
- 400: validation failure, nothing written
- 404: unknown store or order
- 409: insufficient points, reward unavailable, checkout already in progress
- 500: partial persistence; body carries stage and order_id
- 503: data store unavailable (app-level handler), retryable

GET /orders lists a store's order history (paginated, optional status filter).
"""

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import OperationalError

from ..services import checkout_service
from ..services.checkout_service import (
    CheckoutError,
    CheckoutInProgressError,
    CheckoutStageError,
    EmptyCartError,
)
from ..services.loyalty_service import LoyaltyError
from ..validation import ValidationError, NotFoundError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _checkout_args(data: dict) -> dict:
    return {
        "store_id": data.get("store_id"),
        "lines": data.get("lines"),
        "discount_percent": data.get("discount_percent", 0),
        "customer_phone": data.get("customer_phone"),
        "reward_id": data.get("reward_id"),
    }


@checkout_bp.post("/quote")
def quote_route():
    """Price a cart without writing anything."""
    data = request.get_json(silent=True) or {}
    try:
        priced = checkout_service.price_cart(**_checkout_args(data))
        return jsonify({"quote": priced.to_dict()}), 200
    except (ValidationError, EmptyCartError) as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except LoyaltyError as e:
        return jsonify({"error": str(e), "details": e.details}), 409


@checkout_bp.post("/complete")
def complete_route():
    """
    Complete a sale.

    Send Idempotency-Key (header) or idempotency_key (body) so a retried
    submission returns the original receipt instead of selling twice.
    """
    data = request.get_json(silent=True) or {}
    idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")

    try:
        receipt = checkout_service.complete_sale(
            **_checkout_args(data),
            payment_method=data.get("payment_method"),
            customer_name=data.get("customer_name"),
            idempotency_key=idempotency_key,
            user_id=data.get("user_id"),
        )
        return jsonify({"receipt": receipt.to_dict()}), 200 if receipt.replayed else 201

    except (ValidationError, EmptyCartError) as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except LoyaltyError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except CheckoutInProgressError as e:
        return jsonify({"error": str(e), "details": e.details, "order_id": e.order_id}), 409
    except CheckoutStageError as e:
        return jsonify({
            "error": str(e),
            "details": e.details,
            "stage": e.stage,
            "order_id": e.order_id,
        }), 500
    except CheckoutError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except OperationalError:
        raise
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/orders/<int:order_id>")
def get_order_route(order_id: int):
    try:
        receipt = checkout_service.get_order_receipt(order_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"receipt": receipt.to_dict()}), 200


@checkout_bp.get("/orders")
def list_orders_route():
    """Order history: ?store_id=&status=&page=&per_page="""
    try:
        result = checkout_service.list_orders(
            request.args.get("store_id"),
            status=request.args.get("status"),
            page=request.args.get("page", 1),
            per_page=request.args.get("per_page", 20),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(result), 200
