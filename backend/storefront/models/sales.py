from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Order(db.Model):
    """
    Order header written by the checkout orchestrator.

    WHY checkout_stage: each checkout step is its own durable write, so the
    header records how far the sale got. Reconciliation uses it to find
    orders that stopped between steps.

    STATUS: pending, processing, completed, cancelled
    LOYALTY STATUS: none (no customer phone), pending (not yet applied), applied

    INVARIANT: total_cents == subtotal_cents - discount_cents + tax_cents
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("store_id", "idempotency_key", name="uq_orders_store_idempotency_key"),
        db.Index("ix_orders_store_status_created", "store_id", "status", "created_at"),
        db.CheckConstraint(
            "subtotal_cents >= 0 AND discount_cents >= 0 AND tax_cents >= 0 AND total_cents >= 0",
            name="ck_orders_amounts_non_negative",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Human-readable number (e.g., "ORD-20261018-0042")
    order_number = db.Column(db.String(32), nullable=False)
    # Client-supplied key per checkout attempt; released when the order is cancelled
    idempotency_key = db.Column(db.String(64), nullable=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(20), nullable=True, index=True)

    # All amounts in minor units (paise)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_percent = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    # Loyalty reward applied on top of the order total
    reward_id = db.Column(db.Integer, db.ForeignKey("loyalty_rewards.id"), nullable=True)
    loyalty_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_due_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(16), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    checkout_stage = db.Column(db.String(32), nullable=False, default="draft")
    failed_stage = db.Column(db.String(32), nullable=True)

    loyalty_status = db.Column(db.String(16), nullable=False, default="none", index=True)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    points_redeemed = db.Column(db.Integer, nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    reward = db.relationship("LoyaltyReward")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "idempotency_key": self.idempotency_key,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "subtotal_cents": self.subtotal_cents,
            "discount_percent": self.discount_percent,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "reward_id": self.reward_id,
            "loyalty_discount_cents": self.loyalty_discount_cents,
            "amount_due_cents": self.amount_due_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "checkout_stage": self.checkout_stage,
            "failed_stage": self.failed_stage,
            "loyalty_status": self.loyalty_status,
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """Line item on an order. Immutable once written."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))
    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "created_at": to_utc_z(self.created_at),
        }
