# Overview: Flask API routes for loyalty; parses input and returns JSON responses.

# backend/storefront/routes/loyalty.py

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import OperationalError

from ..services import loyalty_service
from ..services.loyalty_service import (
    LoyaltyError,
    AccountNotFoundError,
    InsufficientPointsError,
    RewardUnavailableError,
)
from ..validation import ValidationError, coerce_int


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


@loyalty_bp.get("/accounts")
def get_account_route():
    """Lookup by ?store_id=&phone=; includes recent points transactions."""
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1)
        account = loyalty_service.get_loyalty_account(store_id, request.args.get("phone"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    if account is None:
        return jsonify({"error": "Loyalty account not found"}), 404

    transactions = loyalty_service.list_transactions(account.id)
    return jsonify({
        "account": account.to_dict(),
        "transactions": [t.to_dict() for t in transactions],
    }), 200


@loyalty_bp.get("/rewards")
def list_rewards_route():
    try:
        store_id = coerce_int("store_id", request.args.get("store_id"), minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    rewards = loyalty_service.list_active_rewards(store_id)
    return jsonify({"rewards": [r.to_dict() for r in rewards]}), 200


@loyalty_bp.post("/redeem")
def redeem_route():
    """
    Redeem a reward outside a checkout.

    Body: {"store_id", "customer_phone", "reward_id", "order_id"?, "order_total_cents"?}
    """
    data = request.get_json(silent=True) or {}
    try:
        store_id = coerce_int("store_id", data.get("store_id"), minimum=1)
        reward_id = coerce_int("reward_id", data.get("reward_id"), minimum=1)
        order_id = coerce_int("order_id", data.get("order_id"), minimum=1, required=False)
        order_total = coerce_int("order_total_cents", data.get("order_total_cents"), minimum=0, required=False)

        result = loyalty_service.redeem_reward(
            store_id,
            data.get("customer_phone"),
            reward_id,
            order_id=order_id,
            order_total_cents=order_total,
        )
        return jsonify({"redemption": result.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except AccountNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except (InsufficientPointsError, RewardUnavailableError) as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except LoyaltyError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except OperationalError:
        raise
    except Exception:
        current_app.logger.exception("Failed to redeem reward")
        return jsonify({"error": "Internal server error"}), 500
