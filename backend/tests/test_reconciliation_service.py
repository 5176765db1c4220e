from datetime import timedelta

import pytest
from sqlalchemy import update

from storefront.extensions import db
from storefront.models import CheckoutIncident, InventoryMovement, LoyaltyAccount, Order, OrderItem, ProductVariant
from storefront.services import checkout_service, loyalty_service, reconciliation_service
from storefront.services.checkout_service import CheckoutStageError
from storefront.time_utils import utcnow
from storefront.validation import ConflictError, NotFoundError


def _interrupted_checkout(store, lines, *, phone=None, with_items=True):
    """Simulate a process that died after writing the header (and maybe the items)."""
    priced = checkout_service.price_cart(store_id=store.id, lines=lines, customer_phone=phone)
    order, _ = checkout_service._persist_order(
        priced, payment_method="cash", customer_name=None, idempotency_key=None, user_id=None,
    )
    if with_items:
        checkout_service._persist_items(order.id, priced.lines)
    return order.id


def _backdate(order_id, minutes=60):
    """Age an order past the reconcile grace window."""
    db.session.execute(
        update(Order).where(Order.id == order_id).values(created_at=utcnow() - timedelta(minutes=minutes))
    )
    db.session.commit()


def _line(variant, quantity):
    return {"product_id": variant.product_id, "variant_id": variant.id, "quantity": quantity}


def test_scan_reports_stale_order_missing_movements(db_session, store, variant):
    order_id = _interrupted_checkout(store, [_line(variant, 2)])

    (diag,) = reconciliation_service.scan_orders(store.id, older_than=timedelta(0))

    assert diag.order_id == order_id
    assert diag.status == "processing"
    assert set(diag.issues) == {"missing_movements", "stale_processing"}


def test_scan_skips_in_flight_checkouts(db_session, store, variant):
    _interrupted_checkout(store, [_line(variant, 2)])

    assert reconciliation_service.scan_orders(store.id) == []


def test_repair_rolls_stock_forward_and_completes(db_session, store, variant):
    order_id = _interrupted_checkout(store, [_line(variant, 2)], phone="9876543210")
    _backdate(order_id)

    result = reconciliation_service.repair_order(order_id)

    assert "adjusted_inventory:1" in result["actions"]
    assert "settled_loyalty" in result["actions"]
    assert "completed" in result["actions"]
    order = db.session.get(Order, order_id)
    assert order.status == "completed"
    assert order.loyalty_status == "applied"
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 8

    again = reconciliation_service.repair_order(order_id)
    assert again["actions"] == []
    assert db.session.query(InventoryMovement).filter_by(order_id=order_id).count() == 1


def test_repair_cancels_order_without_items(db_session, store, variant):
    order_id = _interrupted_checkout(store, [_line(variant, 1)], with_items=False)
    _backdate(order_id)

    result = reconciliation_service.repair_order(order_id)

    assert result["actions"] == ["cancelled"]
    assert db.session.get(Order, order_id).status == "cancelled"
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_repair_refuses_checkout_still_in_grace_window(db_session, store, variant):
    order_id = _interrupted_checkout(store, [_line(variant, 1)], with_items=False)

    with pytest.raises(ConflictError):
        reconciliation_service.repair_order(order_id)

    assert db.session.get(Order, order_id).status == "processing"


def test_cancelled_order_cannot_be_walked_forward(db_session, store, variant):
    priced = checkout_service.price_cart(store_id=store.id, lines=[_line(variant, 2)])
    order, _ = checkout_service._persist_order(
        priced, payment_method="cash", customer_name=None, idempotency_key="till-2-0042", user_id=None,
    )
    order_id = order.id
    _backdate(order_id)
    assert reconciliation_service.repair_order(order_id)["actions"] == ["cancelled"]

    with pytest.raises(CheckoutStageError):
        checkout_service._persist_items(order_id, priced.lines)
    db.session.rollback()
    with pytest.raises(CheckoutStageError):
        checkout_service.adjust_inventory_for_order(order_id)
    with pytest.raises(CheckoutStageError):
        checkout_service.finalize_order(order_id)
    db.session.rollback()

    order = db.session.get(Order, order_id)
    assert order.status == "cancelled"
    assert order.completed_at is None
    assert order.idempotency_key is None
    assert db.session.query(OrderItem).filter_by(order_id=order_id).count() == 0
    assert db.session.query(InventoryMovement).filter_by(order_id=order_id).count() == 0
    assert db.session.get(ProductVariant, variant.id).stock_quantity == 10


def test_repair_settles_pending_loyalty_and_resolves_incident(db_session, store, variant, monkeypatch):
    real_earn = loyalty_service.earn_points

    def down(*args, **kwargs):
        raise RuntimeError("points ledger unavailable")

    monkeypatch.setattr(loyalty_service, "earn_points", down)
    receipt = checkout_service.complete_sale(
        store_id=store.id, lines=[_line(variant, 1)], payment_method="card", customer_phone="9876543210",
    )
    monkeypatch.setattr(loyalty_service, "earn_points", real_earn)

    (diag,) = reconciliation_service.scan_orders(store.id)
    assert diag.issues == ["loyalty_pending"]

    reconciliation_service.repair_order(receipt.order.id)

    account = db.session.query(LoyaltyAccount).one()
    assert account.total_points == loyalty_service.calculate_points_to_earn(receipt.order.amount_due_cents)
    incident = db.session.query(CheckoutIncident).one()
    assert incident.resolved_at is not None
    assert incident.resolution.startswith("repaired")
    assert reconciliation_service.scan_orders(store.id) == []


def test_total_mismatch_needs_manual_review(db_session, store, variant):
    receipt = checkout_service.complete_sale(store_id=store.id, lines=[_line(variant, 1)], payment_method="cash")
    db.session.execute(update(Order).where(Order.id == receipt.order.id).values(total_cents=1))
    db.session.commit()

    (diag,) = reconciliation_service.scan_orders(store.id)
    assert "total_mismatch" in diag.issues
    with pytest.raises(ConflictError):
        reconciliation_service.repair_order(receipt.order.id)


def test_repair_unknown_order(db_session):
    with pytest.raises(NotFoundError):
        reconciliation_service.repair_order(123_456)


def test_ledgers_match_after_sales(db_session, store, make_variant, make_account):
    v = make_variant(stock=3)
    account = make_account(points=40)
    checkout_service.complete_sale(
        store_id=store.id, lines=[_line(v, 5)], payment_method="cash", customer_phone=account.customer_phone,
    )

    assert reconciliation_service.verify_inventory_ledger(store.id) == []
    assert reconciliation_service.verify_loyalty_ledger(store.id) == []


def test_ledger_drift_is_reported(db_session, store, variant, make_account):
    account = make_account(points=40)
    db.session.execute(update(ProductVariant).where(ProductVariant.id == variant.id).values(stock_quantity=99))
    db.session.execute(update(LoyaltyAccount).where(LoyaltyAccount.id == account.id).values(total_points=0))
    db.session.commit()

    (stock,) = reconciliation_service.verify_inventory_ledger(store.id)
    (points,) = reconciliation_service.verify_loyalty_ledger(store.id)

    assert (stock["stock_quantity"], stock["expected_quantity"]) == (99, 10)
    assert (points["total_points"], points["expected_points"]) == (0, 40)
