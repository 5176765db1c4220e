# Overview: Detects and repairs checkouts that stopped between durable steps; replays the ledgers.

"""
Reconciliation

WHY: The checkout commits each stage on its own, so a crash or an outage can
leave an order header without items, items without stock movements, or a
completed sale whose points were never posted. This module finds those
states from what is persisted and rolls them forward (or cancels them when
nothing physical was recorded).

DESIGN:
- Diagnosis is read-only and derived from rows, never from in-memory state.
- Repair is idempotent: running it twice on the same order writes nothing
  the second time.
- Ledger checks replay movements and points transactions against the live
  counters; they report and never "fix" counters silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, func, or_

from ..extensions import db
from ..models import (
    Order,
    Product,
    ProductVariant,
    InventoryMovement,
    LoyaltyAccount,
    LoyaltyTransaction,
)
from ..validation import ConflictError, NotFoundError
from storefront.time_utils import utcnow
from . import checkout_service, incident_service
from .loyalty_service import LoyaltyError

logger = logging.getLogger(__name__)


ISSUE_MISSING_ITEMS = "missing_items"
ISSUE_MISSING_MOVEMENTS = "missing_movements"
ISSUE_LOYALTY_PENDING = "loyalty_pending"
ISSUE_STALE_PROCESSING = "stale_processing"
ISSUE_TOTAL_MISMATCH = "total_mismatch"


@dataclass
class OrderDiagnosis:
    order_id: int
    order_number: str
    status: str
    checkout_stage: str
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "status": self.status,
            "checkout_stage": self.checkout_stage,
            "issues": list(self.issues),
        }


def diagnose_order(order: Order, *, stale: bool = False) -> OrderDiagnosis:
    diagnosis = OrderDiagnosis(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        checkout_stage=order.checkout_stage,
    )
    if order.status == "cancelled":
        return diagnosis

    items = list(order.items)
    if not items:
        diagnosis.issues.append(ISSUE_MISSING_ITEMS)
    else:
        moved = {
            item_id
            for (item_id,) in db.session.query(InventoryMovement.order_item_id).filter(
                InventoryMovement.order_id == order.id,
                InventoryMovement.movement_type == "sale",
            )
        }
        if any(i.variant_id is not None and i.id not in moved for i in items):
            diagnosis.issues.append(ISSUE_MISSING_MOVEMENTS)
        if sum(i.line_total_cents for i in items) != order.subtotal_cents:
            diagnosis.issues.append(ISSUE_TOTAL_MISMATCH)

    if order.total_cents != order.subtotal_cents - order.discount_cents + order.tax_cents:
        if ISSUE_TOTAL_MISMATCH not in diagnosis.issues:
            diagnosis.issues.append(ISSUE_TOTAL_MISMATCH)

    if order.customer_phone and order.loyalty_status == "pending" and items:
        diagnosis.issues.append(ISSUE_LOYALTY_PENDING)

    if order.status == "processing" and stale:
        diagnosis.issues.append(ISSUE_STALE_PROCESSING)
    return diagnosis


def scan_orders(store_id: int | None = None, older_than: timedelta | None = None) -> list[OrderDiagnosis]:
    """
    Orders that need attention, oldest first.

    Only processing orders older than older_than (default
    RECONCILE_GRACE_MINUTES) count as stale, so in-flight checkouts are not
    reported.
    """
    if older_than is None:
        older_than = timedelta(minutes=current_app.config["RECONCILE_GRACE_MINUTES"])
    stale_before = utcnow() - older_than

    q = db.session.query(Order).filter(
        Order.status != "cancelled",
        or_(
            and_(Order.status == "processing", Order.created_at <= stale_before),
            and_(Order.status == "completed", Order.loyalty_status == "pending"),
        ),
    )
    if store_id is not None:
        q = q.filter(Order.store_id == store_id)

    results = []
    for order in q.order_by(Order.id.asc()).all():
        diagnosis = diagnose_order(order, stale=order.status == "processing")
        if diagnosis.issues:
            results.append(diagnosis)

    completed_mismatch = db.session.query(Order).filter(
        Order.status == "completed",
        Order.total_cents != Order.subtotal_cents - Order.discount_cents + Order.tax_cents,
    )
    if store_id is not None:
        completed_mismatch = completed_mismatch.filter(Order.store_id == store_id)
    seen = {d.order_id for d in results}
    for order in completed_mismatch.all():
        if order.id not in seen:
            results.append(diagnose_order(order))

    return sorted(results, key=lambda d: d.order_id)


def repair_order(order_id: int, *, user_id: int | None = None) -> dict:
    """
    Roll an interrupted checkout forward, or cancel it if it has no items.

    Returns {"order_id", "actions", "diagnosis"}. Raises ConflictError for a
    total mismatch, which needs a person to look at it, and for a processing
    order younger than RECONCILE_GRACE_MINUTES, which a till may still be
    working on.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")

    if order.status == "processing":
        grace = timedelta(minutes=current_app.config["RECONCILE_GRACE_MINUTES"])
        in_flight = db.session.query(Order.id).filter(
            Order.id == order_id,
            Order.created_at > utcnow() - grace,
        ).first()
        if in_flight is not None:
            raise ConflictError(f"Order {order.order_number} is still in progress; retry after the grace period")

    diagnosis = diagnose_order(order)
    actions: list[str] = []
    if ISSUE_TOTAL_MISMATCH in diagnosis.issues:
        raise ConflictError(f"Order {order.order_number} totals do not add up; manual review required")

    if order.status == "cancelled":
        return {"order_id": order_id, "actions": actions, "diagnosis": diagnosis.to_dict()}

    if ISSUE_MISSING_ITEMS in diagnosis.issues:
        checkout_service.cancel_order(order_id, order.checkout_stage, user_id=user_id)
        actions.append("cancelled")
    else:
        if order.status == "processing" and (ISSUE_MISSING_MOVEMENTS in diagnosis.issues or order.checkout_stage in (
            checkout_service.STAGE_ORDER_PERSISTED,
            checkout_service.STAGE_ITEMS_PERSISTED,
        )):
            adjustments = checkout_service.adjust_inventory_for_order(order_id, user_id=user_id)
            if adjustments:
                actions.append(f"adjusted_inventory:{len(adjustments)}")

        order = db.session.get(Order, order_id)
        if order.customer_phone and order.loyalty_status == "pending":
            try:
                checkout_service.settle_loyalty_for_order(order_id)
                actions.append("settled_loyalty")
            except LoyaltyError:
                db.session.rollback()
                if db.session.get(Order, order_id).status == "processing":
                    checkout_service.drop_loyalty_discount(order_id)
                checkout_service.settle_loyalty_for_order(order_id, redeem=False)
                actions.append("settled_loyalty_without_reward")

        order = db.session.get(Order, order_id)
        if order.status != "completed":
            checkout_service.finalize_order(order_id)
            actions.append("completed")

    resolved = incident_service.resolve_incidents(order_id, "repaired: " + (", ".join(actions) or "no action"))
    db.session.commit()
    if actions or resolved:
        logger.info("Repaired order %s: %s (%d incidents resolved)", order_id, actions, resolved)
    return {"order_id": order_id, "actions": actions, "diagnosis": diagnosis.to_dict()}


def verify_inventory_ledger(store_id: int) -> list[dict]:
    """Variants whose stock differs from opening_stock + SUM(movements)."""
    movement_sum = (
        db.session.query(
            InventoryMovement.variant_id.label("variant_id"),
            func.coalesce(func.sum(InventoryMovement.quantity_change), 0).label("total"),
        )
        .group_by(InventoryMovement.variant_id)
        .subquery()
    )
    rows = (
        db.session.query(ProductVariant, func.coalesce(movement_sum.c.total, 0))
        .join(Product, Product.id == ProductVariant.product_id)
        .outerjoin(movement_sum, movement_sum.c.variant_id == ProductVariant.id)
        .filter(Product.store_id == store_id)
        .order_by(ProductVariant.id)
        .all()
    )

    mismatches = []
    for variant, total in rows:
        expected = variant.opening_stock + int(total)
        if expected != variant.stock_quantity:
            mismatches.append({
                "variant_id": variant.id,
                "sku": variant.sku,
                "stock_quantity": variant.stock_quantity,
                "expected_quantity": expected,
            })
    if mismatches:
        logger.error("Inventory ledger mismatch for store %s: %d variants", store_id, len(mismatches))
    return mismatches


def verify_loyalty_ledger(store_id: int) -> list[dict]:
    """Accounts whose total_points differs from the sum of their transactions."""
    tx_sum = (
        db.session.query(
            LoyaltyTransaction.loyalty_account_id.label("account_id"),
            func.coalesce(func.sum(LoyaltyTransaction.points), 0).label("total"),
        )
        .group_by(LoyaltyTransaction.loyalty_account_id)
        .subquery()
    )
    rows = (
        db.session.query(LoyaltyAccount, func.coalesce(tx_sum.c.total, 0))
        .outerjoin(tx_sum, tx_sum.c.account_id == LoyaltyAccount.id)
        .filter(LoyaltyAccount.store_id == store_id)
        .order_by(LoyaltyAccount.id)
        .all()
    )

    mismatches = []
    for account, total in rows:
        if int(total) != account.total_points:
            mismatches.append({
                "account_id": account.id,
                "customer_phone": account.customer_phone,
                "total_points": account.total_points,
                "expected_points": int(total),
            })
    if mismatches:
        logger.error("Loyalty ledger mismatch for store %s: %d accounts", store_id, len(mismatches))
    return mismatches
