import pytest

from storefront.extensions import db
from storefront.models import (
    CheckoutIncident,
    InventoryMovement,
    LoyaltyAccount,
    LoyaltyTransaction,
    Order,
    OrderItem,
    ProductVariant,
)
from storefront.services import checkout_service, inventory_service, loyalty_service
from storefront.services.checkout_service import CheckoutInProgressError, CheckoutStageError, EmptyCartError
from storefront.services.loyalty_service import InsufficientPointsError
from storefront.validation import ValidationError


def _sell(store, lines, **kwargs):
    kwargs.setdefault("payment_method", "cash")
    return checkout_service.complete_sale(store_id=store.id, lines=lines, **kwargs)


def _line(variant, quantity):
    return {"product_id": variant.product_id, "variant_id": variant.id, "quantity": quantity}


def test_complete_sale_writes_order_items_stock_and_points(db_session, store, variant):
    receipt = _sell(
        store,
        [_line(variant, 2)],
        discount_percent=10,
        customer_name="Meera",
        customer_phone="+91 98765-43210",
    )

    assert receipt.status == "completed"
    assert receipt.warnings == []
    order = receipt.order
    assert order.status == "completed"
    assert order.checkout_stage == "completed"
    assert order.order_number.startswith("ORD-")
    assert (order.subtotal_cents, order.discount_cents, order.tax_cents, order.total_cents) == (
        200_000, 20_000, 32_400, 212_400,
    )
    assert order.amount_due_cents == 212_400
    assert order.customer_phone == "9876543210"

    (item,) = receipt.items
    assert item.unit_price_cents == 100_000
    assert item.line_total_cents == 200_000

    assert db.session.get(ProductVariant, variant.id).stock_quantity == 8
    (move,) = db.session.query(InventoryMovement).filter_by(order_id=order.id).all()
    assert move.movement_type == "sale"
    assert move.order_item_id == item.id

    assert order.loyalty_status == "applied"
    assert order.points_earned == 210
    assert receipt.loyalty_account["total_points"] == 210
    assert receipt.loyalty_account["tier"] == "bronze"


def test_walk_in_sale_has_no_loyalty(db_session, store, variant):
    receipt = _sell(store, [_line(variant, 1)], payment_method="UPI")

    assert receipt.order.loyalty_status == "none"
    assert receipt.order.payment_method == "upi"
    assert receipt.loyalty_account is None
    assert db.session.query(LoyaltyAccount).count() == 0


def test_variant_price_adjustment_is_charged(db_session, store, make_variant):
    xl = make_variant(stock=5, adjustment=15_000)

    receipt = _sell(store, [_line(xl, 1)])

    assert receipt.items[0].unit_price_cents == 115_000


def test_empty_cart_is_rejected_before_any_write(db_session, store):
    with pytest.raises(EmptyCartError):
        _sell(store, [])
    assert db.session.query(Order).count() == 0


@pytest.mark.parametrize("overrides", [
    {"discount_percent": 7},
    {"payment_method": "cheque"},
    {"customer_phone": "12345"},
])
def test_invalid_input_rejected_before_any_write(db_session, store, variant, overrides):
    with pytest.raises(ValidationError):
        _sell(store, [_line(variant, 1)], **overrides)
    assert db.session.query(Order).count() == 0
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_variant_from_another_product_rejected(db_session, store, variant):
    with pytest.raises(ValidationError):
        _sell(store, [{"product_id": variant.product_id + 1000, "variant_id": variant.id, "quantity": 1}])


def test_repeat_submission_returns_original_receipt(db_session, store, variant):
    first = _sell(store, [_line(variant, 1)], idempotency_key="till-3-000117")
    second = _sell(store, [_line(variant, 1)], idempotency_key="till-3-000117")

    assert second.replayed
    assert second.order.id == first.order.id
    assert db.session.query(Order).count() == 1
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 9


def test_oversold_line_completes_with_warning(db_session, store, make_variant):
    v = make_variant(stock=2)

    receipt = _sell(store, [_line(v, 5)])

    assert receipt.status == "completed_with_warnings"
    (warning,) = receipt.warnings
    assert warning["code"] == "oversold"
    assert warning["oversold_units"] == 3
    assert warning["fulfilled_quantity"] == 2
    assert db.session.get(ProductVariant, v.id).stock_quantity == 0
    assert receipt.items[0].quantity == 5


def test_reward_is_redeemed_before_points_are_earned(db_session, store, variant, make_account, make_reward):
    account = make_account(points=120)
    reward = make_reward(points_required=80, discount_type="fixed", discount_value=5_000)

    receipt = _sell(
        store,
        [_line(variant, 2)],
        discount_percent=10,
        customer_phone=account.customer_phone,
        reward_id=reward.id,
    )

    order = receipt.order
    assert order.loyalty_discount_cents == 5_000
    assert order.amount_due_cents == 207_400
    assert order.points_redeemed == 80
    assert order.points_earned == 200

    refreshed = db.session.get(LoyaltyAccount, account.id)
    assert refreshed.total_points == 120 - 80 + 200
    assert refreshed.lifetime_points == 120 + 200
    types = [t.transaction_type for t in sorted(refreshed.transactions, key=lambda t: t.id)]
    assert types == ["earned", "redeemed", "earned"]


def test_insufficient_points_rejects_checkout(db_session, store, variant, make_account, make_reward):
    account = make_account(points=50)
    reward = make_reward(points_required=80)

    with pytest.raises(InsufficientPointsError):
        _sell(store, [_line(variant, 1)], customer_phone=account.customer_phone, reward_id=reward.id)

    assert db.session.query(Order).count() == 0
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_stock_failure_compensates_and_records_incident(db_session, store, make_variant, monkeypatch):
    a = make_variant(stock=5)
    b = make_variant(stock=5)
    real_adjust = inventory_service.adjust_stock

    def flaky_adjust(variant_id, *args, **kwargs):
        if variant_id == b.id:
            raise RuntimeError("disk full")
        return real_adjust(variant_id, *args, **kwargs)

    monkeypatch.setattr(inventory_service, "adjust_stock", flaky_adjust)

    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(a, 2), _line(b, 1)], idempotency_key="retry-me")

    assert exc.value.stage == "inventory_adjusted"
    order = db.session.get(Order, exc.value.order_id)
    assert order.status == "cancelled"
    assert order.failed_stage == "inventory_adjusted"
    assert order.idempotency_key is None
    assert db.session.get(ProductVariant, a.id).stock_quantity == 5

    (incident,) = db.session.query(CheckoutIncident).all()
    assert incident.order_id == order.id
    assert incident.error_type == "RuntimeError"
    assert incident.resolved_at is not None

    # key was released, so the cashier can retry the same cart
    monkeypatch.setattr(inventory_service, "adjust_stock", real_adjust)
    retry = _sell(store, [_line(a, 2), _line(b, 1)], idempotency_key="retry-me")
    assert retry.status == "completed"
    assert not retry.replayed


def test_item_failure_leaves_no_partial_items(db_session, store, variant, monkeypatch):
    def broken_items(order_id, lines):
        db.session.add(OrderItem(order_id=order_id, product_id=variant.product_id, quantity=1,
                                 unit_price_cents=1, line_total_cents=1))
        db.session.flush()
        raise RuntimeError("connection reset")

    monkeypatch.setattr(checkout_service, "_persist_items", broken_items)

    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(variant, 1)])

    assert exc.value.stage == "items_persisted"
    assert db.session.query(OrderItem).count() == 0
    assert db.session.get(Order, exc.value.order_id).status == "cancelled"


def test_loyalty_failure_does_not_undo_sale(db_session, store, variant, monkeypatch):
    def down(*args, **kwargs):
        raise RuntimeError("points ledger unavailable")

    monkeypatch.setattr(loyalty_service, "earn_points", down)

    receipt = _sell(store, [_line(variant, 1)], customer_phone="9876543210")

    assert receipt.order.status == "completed"
    assert receipt.order.loyalty_status == "pending"
    assert receipt.status == "completed_with_warnings"
    assert receipt.warnings[0]["code"] == "loyalty_pending"
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 9
    assert db.session.query(LoyaltyTransaction).count() == 0

    (incident,) = db.session.query(CheckoutIncident).all()
    assert incident.stage == "loyalty_accrued"
    assert incident.resolved_at is None


def test_get_order_receipt_rebuilds_warnings(db_session, store, make_variant):
    v = make_variant(stock=1)
    sold = _sell(store, [_line(v, 3)])

    receipt = checkout_service.get_order_receipt(sold.order.id)

    assert receipt.status == "completed_with_warnings"
    assert receipt.to_dict()["totals"]["total_cents"] == sold.order.total_cents


def test_key_of_unfinished_checkout_is_in_progress(db_session, store, variant):
    priced = checkout_service.price_cart(store_id=store.id, lines=[_line(variant, 1)])
    order, _ = checkout_service._persist_order(
        priced, payment_method="cash", customer_name=None, idempotency_key="till-1-000042", user_id=None,
    )

    with pytest.raises(CheckoutInProgressError) as exc:
        _sell(store, [_line(variant, 1)], idempotency_key="till-1-000042")

    assert exc.value.order_id == order.id
    assert db.session.query(Order).count() == 1
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_concurrent_submission_with_same_key_replays_winner(db_session, store, variant, monkeypatch):
    first = _sell(store, [_line(variant, 1)], idempotency_key="till-4-000009")
    real_find = checkout_service._find_by_idempotency_key
    calls = []

    def find_after_first_call(store_id, key):
        # The losing request checked before the winner committed
        calls.append(key)
        if len(calls) == 1:
            return None
        return real_find(store_id, key)

    monkeypatch.setattr(checkout_service, "_find_by_idempotency_key", find_after_first_call)

    second = _sell(store, [_line(variant, 1)], idempotency_key="till-4-000009")

    assert second.replayed
    assert second.order.id == first.order.id
    assert len(calls) == 2
    assert db.session.query(Order).count() == 1
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 9


def test_order_number_collision_is_regenerated(db_session, store, variant, monkeypatch):
    taken = _sell(store, [_line(variant, 1)]).order.order_number
    candidates = iter([taken, "ORD-20261018-0001"])

    monkeypatch.setattr(checkout_service, "generate_order_number", lambda: next(candidates))
    # Both requests saw the number as free; the unique constraint decides
    monkeypatch.setattr(checkout_service, "order_number_taken", lambda number: False)

    receipt = _sell(store, [_line(variant, 1)])

    assert receipt.order.order_number == "ORD-20261018-0001"
    assert db.session.query(Order).count() == 2


def test_order_number_exhaustion_fails_before_any_stock_moves(app, db_session, store, variant, monkeypatch):
    taken = _sell(store, [_line(variant, 1)]).order.order_number
    calls = []

    def same_number():
        calls.append(taken)
        return taken

    monkeypatch.setattr(checkout_service, "generate_order_number", same_number)

    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(variant, 1)])

    assert exc.value.stage == "order_persisted"
    assert len(calls) == app.config["ORDER_NUMBER_MAX_ATTEMPTS"]
    assert db.session.query(Order).count() == 1
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 9


def test_reward_lost_after_pricing_charges_full_total(db_session, store, variant, make_account, make_reward, monkeypatch):
    account = make_account(points=100)
    reward = make_reward(points_required=80, discount_type="fixed", discount_value=20_000)
    phone, store_id, reward_id = account.customer_phone, store.id, reward.id
    real_adjust = checkout_service.adjust_inventory_for_order

    def adjust_then_spend_elsewhere(order_id, user_id=None):
        result = real_adjust(order_id, user_id=user_id)
        # Another till redeems the same points before this sale reaches loyalty
        loyalty_service.redeem_reward(store_id, phone, reward_id)
        return result

    monkeypatch.setattr(checkout_service, "adjust_inventory_for_order", adjust_then_spend_elsewhere)

    receipt = _sell(store, [_line(variant, 2)], customer_phone=phone, reward_id=reward_id)

    order = receipt.order
    assert order.status == "completed"
    assert order.total_cents == 236_000
    assert order.loyalty_discount_cents == 0
    assert order.amount_due_cents == 236_000
    assert order.points_redeemed == 0
    assert order.points_earned == 230
    assert [w["code"] for w in receipt.warnings] == ["reward_not_redeemed"]
    assert db.session.get(LoyaltyAccount, account.id).total_points == 100 - 80 + 230

    (incident,) = db.session.query(CheckoutIncident).all()
    assert incident.stage == "loyalty_accrued"
    assert incident.order_id == order.id


def test_checkout_stops_when_order_is_cancelled_underneath(db_session, store, variant, monkeypatch):
    real_items = checkout_service._persist_items

    def cancelled_by_repair(order_id, lines):
        checkout_service.cancel_order(order_id, "order_persisted")
        real_items(order_id, lines)

    monkeypatch.setattr(checkout_service, "_persist_items", cancelled_by_repair)

    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(variant, 1)], idempotency_key="till-5-000001")

    order = db.session.get(Order, exc.value.order_id)
    assert order.status == "cancelled"
    assert order.failed_stage == "order_persisted"
    assert db.session.query(OrderItem).count() == 0
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_cancelled_order_is_never_finalized(db_session, store, variant, monkeypatch):
    def cancelled_by_repair(order_id):
        checkout_service.cancel_order(order_id, "inventory_adjusted")

    monkeypatch.setattr(checkout_service, "_accrue_loyalty", cancelled_by_repair)

    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(variant, 2)], idempotency_key="till-5-000002")

    assert exc.value.stage == "completed"
    order = db.session.get(Order, exc.value.order_id)
    assert order.status == "cancelled"
    assert order.completed_at is None
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10

    # key was released with the cancellation, so a retry sells exactly once
    retry = _sell(store, [_line(variant, 2)], idempotency_key="till-5-000002")
    assert not retry.replayed
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 8


def test_list_orders_newest_first_with_status_filter(db_session, store, variant, monkeypatch):
    first = _sell(store, [_line(variant, 1)])
    second = _sell(store, [_line(variant, 1)])

    def broken(order_id, user_id=None):
        raise RuntimeError("write failed")

    monkeypatch.setattr(checkout_service, "adjust_inventory_for_order", broken)
    with pytest.raises(CheckoutStageError) as exc:
        _sell(store, [_line(variant, 1)])

    everything = checkout_service.list_orders(store.id)
    completed = checkout_service.list_orders(store.id, status="completed", per_page=1)
    cancelled = checkout_service.list_orders(store.id, status="cancelled")

    assert [o["id"] for o in everything["items"]] == [exc.value.order_id, second.order.id, first.order.id]
    assert everything["pagination"]["total"] == 3
    assert [o["id"] for o in completed["items"]] == [second.order.id]
    assert completed["pagination"]["total_pages"] == 2
    assert completed["pagination"]["has_next"]
    assert [o["id"] for o in cancelled["items"]] == [exc.value.order_id]

    with pytest.raises(ValidationError):
        checkout_service.list_orders(store.id, status="refunded")
