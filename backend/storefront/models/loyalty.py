from __future__ import annotations

from flask import current_app

from ..extensions import db
from storefront.time_utils import to_utc_z


def tier_for_points(lifetime_points: int, thresholds=None) -> str:
    """
    Derive the loyalty tier from lifetime points.

    thresholds is a sequence of (tier, min_lifetime_points); defaults to
    LOYALTY_TIER_THRESHOLDS from app config.
    """
    if thresholds is None:
        thresholds = current_app.config["LOYALTY_TIER_THRESHOLDS"]
    tier = thresholds[0][0]
    for name, minimum in sorted(thresholds, key=lambda t: t[1]):
        if lifetime_points >= minimum:
            tier = name
    return tier


class LoyaltyAccount(db.Model):
    """
    Loyalty account for one customer phone within one store.

    WHY no tier column: tier is derived from lifetime_points on read so it can
    never drift from the points it summarises.

    INVARIANTS:
    - total_points == SUM(loyalty_transactions.points) for the account
    - lifetime_points only ever increases
    - both counters are only changed by loyalty_service via atomic UPDATEs
    """
    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        db.UniqueConstraint("store_id", "customer_phone", name="uq_loyalty_accounts_store_phone"),
        db.CheckConstraint("total_points >= 0", name="ck_loyalty_accounts_points_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    customer_phone = db.Column(db.String(20), nullable=False)
    customer_name = db.Column(db.String(255), nullable=True)

    total_points = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    store = db.relationship("Store", backref=db.backref("loyalty_accounts", lazy=True))

    @property
    def tier(self) -> str:
        return tier_for_points(self.lifetime_points or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "customer_phone": self.customer_phone,
            "customer_name": self.customer_name,
            "total_points": self.total_points,
            "lifetime_points": self.lifetime_points,
            "tier": self.tier,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of point events.

    TRANSACTION TYPES:
    - earned: points from a purchase (positive)
    - redeemed: points spent on a reward (negative)

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_account_created", "loyalty_account_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    loyalty_account_id = db.Column(db.Integer, db.ForeignKey("loyalty_accounts.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    points = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    account = db.relationship("LoyaltyAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loyalty_account_id": self.loyalty_account_id,
            "order_id": self.order_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyReward(db.Model):
    """
    Redeemable reward offered by a store.

    DISCOUNT TYPES:
    - percentage: discount_value percent of the order total
    - fixed: discount_value in minor units
    """
    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        db.CheckConstraint("points_required > 0", name="ck_loyalty_rewards_cost_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    points_required = db.Column(db.Integer, nullable=False)
    discount_type = db.Column(db.String(16), nullable=False, default="fixed")
    discount_value = db.Column(db.Integer, nullable=False)

    current_redemptions = db.Column(db.Integer, nullable=False, default=0)
    max_redemptions = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "description": self.description,
            "points_required": self.points_required,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "current_redemptions": self.current_redemptions,
            "max_redemptions": self.max_redemptions,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class RewardRedemption(db.Model):
    """One row per redemption action. Immutable."""
    __tablename__ = "reward_redemptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    reward_id = db.Column(db.Integer, db.ForeignKey("loyalty_rewards.id"), nullable=False, index=True)
    loyalty_account_id = db.Column(db.Integer, db.ForeignKey("loyalty_accounts.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    points_spent = db.Column(db.Integer, nullable=False)
    discount_applied_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    reward = db.relationship("LoyaltyReward", backref=db.backref("redemptions", lazy=True))
    account = db.relationship("LoyaltyAccount", backref=db.backref("redemptions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reward_id": self.reward_id,
            "loyalty_account_id": self.loyalty_account_id,
            "order_id": self.order_id,
            "points_spent": self.points_spent,
            "discount_applied_cents": self.discount_applied_cents,
            "created_at": to_utc_z(self.created_at),
        }
