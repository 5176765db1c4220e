"""
Sale completion workflow.

WHY: One cashier action has to leave four pieces of state in agreement: the
order, its items, variant stock (with movements) and the customer's points
(with the points ledger). Each step is a durable write that later steps
depend on, so the checkout runs as a saga:

    draft -> priced -> order_persisted -> items_persisted
          -> inventory_adjusted -> loyalty_accrued -> completed
    any non-terminal stage -> failed

FAILURE POLICY:
- Validation problems (empty cart, bad discount tier, malformed phone,
  unknown product, insufficient points for the chosen reward) are raised
  before anything is written.
- A failure while writing the order header leaves nothing behind and is
  safe to retry.
- A failure while writing items or adjusting stock rolls back the open
  transaction, reverses any stock already taken, cancels the order and
  records a checkout incident. CheckoutStageError carries the order id and
  the stage that failed.
- A failure in the loyalty step does not undo the physical sale: the order
  completes with loyalty_status='pending', the receipt carries a warning and
  an incident is recorded for the repair pass.
- A reward that can no longer be redeemed (points spent or the reward
  exhausted since pricing) is dropped: the order is charged its full total,
  points are earned on that, and the receipt warns reward_not_redeemed.
- Every stage write is conditional on status='processing'; an order
  cancelled underneath the till stops with CheckoutStageError.
- Oversold lines complete with a warning; the receipt status becomes
  'completed_with_warnings'.

IDEMPOTENCY: a client-supplied idempotency_key per checkout attempt. A repeat
submission returns the existing receipt (replayed=True) without writing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Store, Product, ProductVariant, Order, OrderItem, InventoryMovement
from ..validation import (
    ValidationError,
    NotFoundError,
    coerce_int,
    normalize_phone,
    clean_optional_str,
    validate_discount_percent,
    validate_payment_method,
)
from storefront.time_utils import utcnow
from . import inventory_service, loyalty_service, incident_service
from .concurrency import run_with_retry
from .loyalty_service import InsufficientPointsError, LoyaltyError
from .order_number_service import generate_order_number, order_number_taken
from .pricing_service import CartLine, PriceBreakdown, calculate_totals, reward_discount_cents

logger = logging.getLogger(__name__)


STAGE_DRAFT = "draft"
STAGE_PRICED = "priced"
STAGE_ORDER_PERSISTED = "order_persisted"
STAGE_ITEMS_PERSISTED = "items_persisted"
STAGE_INVENTORY_ADJUSTED = "inventory_adjusted"
STAGE_LOYALTY_ACCRUED = "loyalty_accrued"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"


class CheckoutError(Exception):
    """Raised for checkout errors."""
    def __init__(self, message: str, details: dict | None = None, *, stage: str | None = None, order_id: int | None = None):
        super().__init__(message)
        self.details = details or {}
        self.stage = stage
        self.order_id = order_id


class EmptyCartError(CheckoutError):
    pass


class CheckoutStageError(CheckoutError):
    """A durable step failed after earlier steps had committed."""


class CheckoutInProgressError(CheckoutError):
    """The idempotency key belongs to an order that has not completed yet."""


@dataclass(frozen=True)
class PricedCart:
    store_id: int
    lines: tuple[CartLine, ...]
    breakdown: PriceBreakdown
    customer_phone: str | None
    reward_id: int | None
    loyalty_discount_cents: int
    amount_due_cents: int
    points_to_earn: int

    def to_dict(self) -> dict:
        data = self.breakdown.to_dict()
        data.update({
            "store_id": self.store_id,
            "lines": [
                {
                    "product_id": line.product_id,
                    "variant_id": line.variant_id,
                    "quantity": line.quantity,
                    "unit_price_cents": line.unit_price_cents,
                    "line_total_cents": line.line_total_cents,
                }
                for line in self.lines
            ],
            "customer_phone": self.customer_phone,
            "reward_id": self.reward_id,
            "loyalty_discount_cents": self.loyalty_discount_cents,
            "amount_due_cents": self.amount_due_cents,
            "points_to_earn": self.points_to_earn,
        })
        return data


@dataclass
class SaleReceipt:
    order: Order
    items: list[OrderItem]
    warnings: list[dict] = field(default_factory=list)
    loyalty_account: dict | None = None
    replayed: bool = False

    @property
    def status(self) -> str:
        return "completed_with_warnings" if self.warnings else "completed"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "replayed": self.replayed,
            "order": self.order.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "totals": {
                "subtotal_cents": self.order.subtotal_cents,
                "discount_percent": self.order.discount_percent,
                "discount_cents": self.order.discount_cents,
                "tax_rate_bps": self.order.tax_rate_bps,
                "tax_cents": self.order.tax_cents,
                "total_cents": self.order.total_cents,
                "loyalty_discount_cents": self.order.loyalty_discount_cents,
                "amount_due_cents": self.order.amount_due_cents,
            },
            "points_earned": self.order.points_earned,
            "points_redeemed": self.order.points_redeemed,
            "loyalty_account": self.loyalty_account,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Draft -> Priced
# ---------------------------------------------------------------------------

def _get_store(store_id) -> Store:
    store_id = coerce_int("store_id", store_id, minimum=1)
    store = db.session.get(Store, store_id)
    if store is None:
        raise NotFoundError("Store not found")
    return store


def _tax_rate_for(store: Store) -> int:
    if store.tax_rate_bps is not None:
        return store.tax_rate_bps
    return current_app.config["TAX_RATE_BPS"]


def _resolve_lines(store: Store, raw_lines) -> list[CartLine]:
    """Turn cart input into priced lines using catalog prices."""
    if not raw_lines:
        raise EmptyCartError("Cart is empty", stage=STAGE_DRAFT)
    if not isinstance(raw_lines, (list, tuple)):
        raise ValidationError("lines must be a list")

    lines = []
    for index, raw in enumerate(raw_lines):
        if not isinstance(raw, dict):
            raise ValidationError(f"lines[{index}] must be an object")
        product_id = coerce_int(f"lines[{index}].product_id", raw.get("product_id"), minimum=1)
        variant_id = coerce_int(f"lines[{index}].variant_id", raw.get("variant_id"), minimum=1, required=False)
        quantity = coerce_int(f"lines[{index}].quantity", raw.get("quantity"), minimum=1)

        product = db.session.get(Product, product_id)
        if product is None or product.store_id != store.id:
            raise ValidationError(f"lines[{index}]: product {product_id} not found in store")
        if not product.is_active:
            raise ValidationError(f"lines[{index}]: product {product_id} is inactive")

        if variant_id is not None:
            variant = db.session.get(ProductVariant, variant_id)
            if variant is None or variant.product_id != product.id:
                raise ValidationError(f"lines[{index}]: variant {variant_id} does not belong to product {product_id}")
            unit_price = variant.unit_price_cents()
        else:
            unit_price = product.effective_price_cents

        lines.append(CartLine(
            unit_price_cents=unit_price,
            quantity=quantity,
            product_id=product.id,
            variant_id=variant_id,
        ))
    return lines


def price_cart(
    *,
    store_id,
    lines,
    discount_percent=0,
    customer_phone=None,
    reward_id=None,
) -> PricedCart:
    """
    Validate and price a cart without writing anything.

    Also used for the till's live quote. Raises ValidationError,
    EmptyCartError, RewardUnavailableError or InsufficientPointsError.
    """
    cfg = current_app.config
    store = _get_store(store_id)
    discount_percent = validate_discount_percent(discount_percent, cfg["ALLOWED_DISCOUNT_PERCENTS"])
    phone = normalize_phone(customer_phone)
    reward_id = coerce_int("reward_id", reward_id, minimum=1, required=False)

    cart_lines = _resolve_lines(store, lines)
    breakdown = calculate_totals(
        cart_lines,
        discount_percent,
        _tax_rate_for(store),
        allowed_discounts=cfg["ALLOWED_DISCOUNT_PERCENTS"],
    )

    loyalty_discount = 0
    if reward_id is not None:
        if not phone:
            raise ValidationError("customer_phone is required to redeem a reward")
        reward = loyalty_service.get_active_reward(store.id, reward_id)
        account = loyalty_service.get_loyalty_account(store.id, phone)
        available = account.total_points if account is not None else 0
        if available < reward.points_required:
            raise InsufficientPointsError(
                "Insufficient points",
                details={"points_required": reward.points_required, "total_points": available},
            )
        loyalty_discount = reward_discount_cents(reward.discount_type, reward.discount_value, breakdown.total_cents)

    amount_due = breakdown.total_cents - loyalty_discount
    return PricedCart(
        store_id=store.id,
        lines=tuple(cart_lines),
        breakdown=breakdown,
        customer_phone=phone,
        reward_id=reward_id,
        loyalty_discount_cents=loyalty_discount,
        amount_due_cents=amount_due,
        points_to_earn=loyalty_service.calculate_points_to_earn(amount_due) if phone else 0,
    )


# ---------------------------------------------------------------------------
# Durable steps
# ---------------------------------------------------------------------------

def _find_by_idempotency_key(store_id: int, key: str) -> Order | None:
    return db.session.query(Order).filter_by(store_id=store_id, idempotency_key=key).first()


def _replay(order: Order) -> SaleReceipt:
    if order.status != "completed":
        raise CheckoutInProgressError(
            "A checkout with this idempotency key is still in progress",
            details={"order_number": order.order_number, "checkout_stage": order.checkout_stage},
            order_id=order.id,
        )
    logger.info("Replaying checkout for order %s", order.order_number)
    return build_receipt(order, replayed=True)


def _persist_order(
    priced: PricedCart,
    *,
    payment_method: str,
    customer_name: str | None,
    idempotency_key: str | None,
    user_id: int | None,
) -> tuple[Order, bool]:
    """
    Write the order header. Returns (order, replayed).

    The order number is regenerated on a unique-constraint conflict. A
    conflict on the idempotency key means a concurrent submission won; its
    order is returned instead.
    """
    attempts = current_app.config["ORDER_NUMBER_MAX_ATTEMPTS"]
    b = priced.breakdown

    for _ in range(attempts):
        order_number = generate_order_number()
        if order_number_taken(order_number):
            continue

        def _op():
            order = Order(
                store_id=priced.store_id,
                order_number=order_number,
                idempotency_key=idempotency_key,
                customer_name=customer_name,
                customer_phone=priced.customer_phone,
                subtotal_cents=b.subtotal_cents,
                discount_percent=b.discount_percent,
                discount_cents=b.discount_cents,
                tax_rate_bps=b.tax_rate_bps,
                tax_cents=b.tax_cents,
                total_cents=b.total_cents,
                reward_id=priced.reward_id,
                loyalty_discount_cents=priced.loyalty_discount_cents,
                amount_due_cents=priced.amount_due_cents,
                payment_method=payment_method,
                status="processing",
                checkout_stage=STAGE_ORDER_PERSISTED,
                loyalty_status="pending" if priced.customer_phone else "none",
                created_by_user_id=user_id,
            )
            db.session.add(order)
            db.session.commit()
            return order

        try:
            return run_with_retry(_op), False
        except IntegrityError:
            db.session.rollback()
            if idempotency_key:
                existing = _find_by_idempotency_key(priced.store_id, idempotency_key)
                if existing is not None:
                    return existing, True
            logger.warning("Order number %s collided; regenerating", order_number)

    raise CheckoutStageError(
        "Could not allocate a unique order number",
        details={"attempts": attempts},
        stage=STAGE_ORDER_PERSISTED,
    )


def _advance_stage(order_id: int, stage: str, *, from_stages: tuple[str, ...] | None = None, **values) -> bool:
    """
    Move a processing order to the next checkout stage (inside the caller's transaction).

    INVARIANTS:
    - Only rows still in status='processing' are touched, so an order the
      repair pass cancelled can never be walked forward or completed.
    - version_id is bumped because this bypasses the ORM's version check.

    Returns False when from_stages is given and the order is already past
    them. Raises CheckoutStageError when the order is no longer processing.
    """
    stmt = update(Order).where(Order.id == order_id, Order.status == "processing")
    if from_stages is not None:
        stmt = stmt.where(Order.checkout_stage.in_(from_stages))
    result = db.session.execute(
        stmt.values(checkout_stage=stage, version_id=Order.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True

    status = db.session.query(Order.status).filter(Order.id == order_id).scalar()
    if status != "processing":
        raise CheckoutStageError(
            f"Order is {status or 'missing'}; checkout cannot continue",
            details={"status": status},
            stage=stage,
            order_id=order_id,
        )
    return False


def _ensure_processing(order: Order | None, stage: str) -> None:
    if order is None or order.status != "processing":
        status = order.status if order is not None else None
        raise CheckoutStageError(
            f"Order is {status or 'missing'}; checkout cannot continue",
            details={"status": status},
            stage=stage,
            order_id=order.id if order is not None else None,
        )


def _persist_items(order_id: int, lines: tuple[CartLine, ...]) -> None:
    def _op():
        if not _advance_stage(order_id, STAGE_ITEMS_PERSISTED, from_stages=(STAGE_ORDER_PERSISTED,)):
            # Items were written by an earlier attempt
            db.session.rollback()
            return
        for line in lines:
            db.session.add(OrderItem(
                order_id=order_id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
            ))
        db.session.commit()

    run_with_retry(_op)


def adjust_inventory_for_order(order_id: int, user_id: int | None = None) -> list[inventory_service.StockAdjustment]:
    """
    Take stock for every variant line of an order, one committed movement per line.

    Lines that already have a sale movement are skipped, so the repair pass
    can call this again after a partial failure. Refuses orders that are no
    longer processing.
    """
    order = db.session.get(Order, order_id)
    _ensure_processing(order, STAGE_INVENTORY_ADJUSTED)
    done = {
        item_id
        for (item_id,) in db.session.query(InventoryMovement.order_item_id).filter(
            InventoryMovement.order_id == order_id,
            InventoryMovement.movement_type == "sale",
        )
    }

    adjustments = []
    for item in list(order.items):
        if item.variant_id is None or item.id in done:
            continue
        adjustments.append(inventory_service.adjust_stock(
            item.variant_id,
            -item.quantity,
            "sale",
            order_id=order_id,
            order_item_id=item.id,
            note=f"Sale: Order {order.order_number}",
            user_id=user_id,
        ))

    def _op():
        _advance_stage(
            order_id,
            STAGE_INVENTORY_ADJUSTED,
            from_stages=(STAGE_ORDER_PERSISTED, STAGE_ITEMS_PERSISTED),
        )
        db.session.commit()

    run_with_retry(_op)
    return adjustments


def settle_loyalty_for_order(order_id: int, *, redeem: bool = True) -> Order:
    """
    Redeem the order's reward (if any) and then earn points on the amount due.

    Runs as one local transaction so redemption and earning land together.
    Completed orders with pending loyalty are settled too; cancelled ones
    are refused.
    """
    def _op():
        order = db.session.get(Order, order_id)
        if order is None or order.status == "cancelled":
            _ensure_processing(order, STAGE_LOYALTY_ACCRUED)
        loyalty_service.get_or_create_account(order.store_id, order.customer_phone, order.customer_name)

        redeemed = 0
        if redeem and order.reward_id is not None:
            redemption = loyalty_service.redeem_reward(
                order.store_id,
                order.customer_phone,
                order.reward_id,
                order_id=order.id,
                order_total_cents=order.total_cents,
                commit=False,
            )
            redeemed = redemption.points_spent

        earned = loyalty_service.earn_points(
            order.store_id,
            order.customer_phone,
            order.amount_due_cents,
            order_id=order.id,
            customer_name=order.customer_name,
            commit=False,
        )

        order.points_redeemed = redeemed
        order.points_earned = earned.points_earned
        order.loyalty_status = "applied"
        if order.checkout_stage == STAGE_INVENTORY_ADJUSTED:
            order.checkout_stage = STAGE_LOYALTY_ACCRUED
        db.session.commit()
        return order

    return run_with_retry(_op)


def _accrue_loyalty(order_id: int) -> None:
    """Loyalty step. Failures leave the order's loyalty pending, never undo the sale."""
    order = db.session.get(Order, order_id)
    if not order.customer_phone:
        return

    try:
        settle_loyalty_for_order(order_id)
        return
    except LoyaltyError as exc:
        # Reward lost a race after pricing: drop its discount, then earn on the full total
        db.session.rollback()
        order = db.session.get(Order, order_id)
        store_id, reward_id = order.store_id, order.reward_id
        try:
            drop_loyalty_discount(order_id)
        except Exception as drop_exc:
            db.session.rollback()
            incident_service.record_incident(
                store_id=store_id,
                order_id=order_id,
                stage=STAGE_LOYALTY_ACCRUED,
                error=drop_exc,
                details={"reward_id": reward_id, "loyalty_status": "pending"},
            )
            return
        incident_service.record_incident(
            store_id=store_id,
            order_id=order_id,
            stage=STAGE_LOYALTY_ACCRUED,
            error=exc,
            details={"reward_id": reward_id, "loyalty_discount_dropped": True, **exc.details},
        )
    except Exception as exc:
        db.session.rollback()
        order = db.session.get(Order, order_id)
        incident_service.record_incident(
            store_id=order.store_id,
            order_id=order_id,
            stage=STAGE_LOYALTY_ACCRUED,
            error=exc,
            details={"loyalty_status": "pending"},
        )
        return

    try:
        settle_loyalty_for_order(order_id, redeem=False)
    except Exception as exc:
        db.session.rollback()
        incident_service.record_incident(
            store_id=store_id,
            order_id=order_id,
            stage=STAGE_LOYALTY_ACCRUED,
            error=exc,
            details={"loyalty_status": "pending"},
        )


def drop_loyalty_discount(order_id: int) -> None:
    """The reward was not redeemed, so the customer owes the full total."""
    def _op():
        order = db.session.get(Order, order_id)
        _ensure_processing(order, STAGE_LOYALTY_ACCRUED)
        order.loyalty_discount_cents = 0
        order.amount_due_cents = order.total_cents
        db.session.commit()

    run_with_retry(_op)


def finalize_order(order_id: int) -> Order:
    def _op():
        _advance_stage(order_id, STAGE_COMPLETED, status="completed", completed_at=utcnow())
        db.session.commit()
        return db.session.get(Order, order_id)

    return run_with_retry(_op)


def cancel_order(order_id: int, failed_stage: str, *, user_id: int | None = None) -> list[inventory_service.StockAdjustment]:
    """
    Compensate a partially written checkout: put stock back and cancel the order.

    The idempotency key is released so the cashier can retry the same cart.
    An order that is already cancelled only has leftover sale movements
    reversed; its original failure details are kept.
    """
    def _op():
        reversed_ = inventory_service.reverse_order_movements(order_id, user_id=user_id, commit=False)
        order = db.session.get(Order, order_id)
        if order.status != "cancelled":
            order.status = "cancelled"
            order.failed_stage = failed_stage
            order.checkout_stage = STAGE_FAILED
            order.cancelled_at = utcnow()
            order.idempotency_key = None
        db.session.commit()
        return reversed_

    return run_with_retry(_op)


def _abort_checkout(order_id: int, store_id: int, failed_stage: str, exc: Exception, user_id: int | None) -> None:
    db.session.rollback()
    logger.error("Checkout for order %s failed at %s: %s", order_id, failed_stage, exc)

    details = {"failed_stage": failed_stage}
    resolution = None
    try:
        reversed_ = cancel_order(order_id, failed_stage, user_id=user_id)
        details["reversed_movements"] = [r.movement_id for r in reversed_]
        resolution = "compensated: order cancelled and stock restored"
    except Exception:
        db.session.rollback()
        logger.exception("Compensation failed for order %s; left for reconciliation", order_id)
        details["compensation_failed"] = True

    try:
        incident_service.record_incident(
            store_id=store_id,
            order_id=order_id,
            stage=failed_stage,
            error=exc,
            details=details,
            resolution=resolution,
        )
    except Exception:
        db.session.rollback()
        logger.exception("Could not record checkout incident for order %s", order_id)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def complete_sale(
    *,
    store_id,
    lines,
    payment_method,
    discount_percent=0,
    customer_name=None,
    customer_phone=None,
    reward_id=None,
    idempotency_key=None,
    user_id=None,
) -> SaleReceipt:
    """
    Finalize a purchase: order, items, stock, loyalty, receipt.

    Raises validation errors before any write, CheckoutStageError for a
    partial failure (after compensation), CheckoutInProgressError when the
    idempotency key belongs to an unfinished order.
    """
    cfg = current_app.config
    payment_method = validate_payment_method(payment_method, cfg["PAYMENT_METHODS"])
    customer_name = clean_optional_str(customer_name, 255)
    idempotency_key = clean_optional_str(idempotency_key, 64)
    user_id = coerce_int("user_id", user_id, minimum=1, required=False)

    if idempotency_key:
        existing = _find_by_idempotency_key(_get_store(store_id).id, idempotency_key)
        if existing is not None:
            return _replay(existing)

    priced = price_cart(
        store_id=store_id,
        lines=lines,
        discount_percent=discount_percent,
        customer_phone=customer_phone,
        reward_id=reward_id,
    )

    try:
        order, replayed = _persist_order(
            priced,
            payment_method=payment_method,
            customer_name=customer_name,
            idempotency_key=idempotency_key,
            user_id=user_id,
        )
    except CheckoutStageError:
        db.session.rollback()
        raise
    if replayed:
        return _replay(order)

    order_id = order.id
    stage = STAGE_ITEMS_PERSISTED
    try:
        _persist_items(order_id, priced.lines)
        stage = STAGE_INVENTORY_ADJUSTED
        adjust_inventory_for_order(order_id, user_id=user_id)
    except Exception as exc:
        _abort_checkout(order_id, priced.store_id, stage, exc, user_id)
        raise CheckoutStageError(
            "Checkout failed; the order was not completed",
            details={"failed_stage": stage},
            stage=stage,
            order_id=order_id,
        ) from exc

    _accrue_loyalty(order_id)

    try:
        order = finalize_order(order_id)
    except Exception as exc:
        db.session.rollback()
        incident_service.record_incident(
            store_id=priced.store_id,
            order_id=order_id,
            stage=STAGE_COMPLETED,
            error=exc,
        )
        raise CheckoutStageError(
            "Sale recorded but could not be finalized",
            stage=STAGE_COMPLETED,
            order_id=order_id,
        ) from exc

    receipt = build_receipt(order)
    logger.info("Completed sale %s (%s)", order.order_number, receipt.status)
    return receipt


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

def order_warnings(order: Order) -> list[dict]:
    """Warnings derived from persisted state, so replays show them too."""
    warnings = []
    movements = (
        db.session.query(InventoryMovement)
        .filter(InventoryMovement.order_id == order.id, InventoryMovement.movement_type == "sale")
        .order_by(InventoryMovement.id)
        .all()
    )
    for m in movements:
        if m.oversold_units > 0:
            warnings.append({
                "code": "oversold",
                "order_item_id": m.order_item_id,
                "variant_id": m.variant_id,
                "requested_quantity": abs(m.requested_change),
                "fulfilled_quantity": abs(m.quantity_change),
                "oversold_units": m.oversold_units,
            })

    if order.customer_phone and order.loyalty_status == "pending":
        warnings.append({"code": "loyalty_pending", "message": "Loyalty points will be applied by reconciliation"})
    elif order.reward_id is not None and order.loyalty_status == "applied" and order.points_redeemed == 0:
        warnings.append({"code": "reward_not_redeemed", "reward_id": order.reward_id})
    return warnings


def build_receipt(order: Order, *, replayed: bool = False) -> SaleReceipt:
    account = None
    if order.customer_phone:
        found = loyalty_service.get_loyalty_account(order.store_id, order.customer_phone)
        account = found.to_dict() if found is not None else None

    return SaleReceipt(
        order=order,
        items=list(order.items),
        warnings=order_warnings(order),
        loyalty_account=account,
        replayed=replayed,
    )


def get_order_receipt(order_id: int) -> SaleReceipt:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return build_receipt(order)


ORDER_STATUSES = ("processing", "completed", "cancelled")


def list_orders(store_id, *, status=None, page=1, per_page=20) -> dict:
    """
    Order history for a store, newest first.

    Returns {"items", "count", "pagination"} with the same pagination block
    as the catalog listings (per_page capped at 100).
    """
    store = _get_store(store_id)
    page = coerce_int("page", page if page is not None else 1, minimum=1)
    per_page = min(coerce_int("per_page", per_page if per_page is not None else 20, minimum=1), 100)

    base_query = db.session.query(Order).filter(Order.store_id == store.id)
    if status:
        status = str(status).strip().lower()
        if status not in ORDER_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
        base_query = base_query.filter(Order.status == status)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    orders = (
        base_query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
