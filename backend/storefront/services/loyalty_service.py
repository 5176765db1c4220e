# Overview: Service-layer operations for loyalty; owns point balances, the points ledger and rewards.

"""
Loyalty Accountant

WHY: Points are a liability the store owes the customer, so the balance has
to be explainable. Every change to total_points is paired with a
LoyaltyTransaction written in the same DB transaction.

INVARIANTS:
- total_points == SUM(loyalty_transactions.points) per account
- lifetime_points only increases (earned points only)
- tier is derived from lifetime_points on read (see models.tier_for_points)
- counters change only through single-row atomic UPDATEs; redemption debits
  use WHERE total_points >= cost so a losing race cannot overdraw
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import LoyaltyAccount, LoyaltyTransaction, LoyaltyReward, RewardRedemption, tier_for_points
from ..validation import ValidationError, normalize_phone
from .pricing_service import reward_discount_cents
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)


class LoyaltyError(Exception):
    """Raised for loyalty operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientPointsError(LoyaltyError):
    pass


class RewardUnavailableError(LoyaltyError):
    pass


class AccountNotFoundError(LoyaltyError):
    pass


@dataclass(frozen=True)
class EarnResult:
    account_id: int
    points_earned: int
    total_points: int
    lifetime_points: int
    tier: str
    account_created: bool

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "points_earned": self.points_earned,
            "total_points": self.total_points,
            "lifetime_points": self.lifetime_points,
            "tier": self.tier,
            "account_created": self.account_created,
        }


@dataclass(frozen=True)
class RedemptionResult:
    redemption_id: int
    reward_id: int
    account_id: int
    points_spent: int
    discount_applied_cents: int

    def to_dict(self) -> dict:
        return {
            "redemption_id": self.redemption_id,
            "reward_id": self.reward_id,
            "account_id": self.account_id,
            "points_spent": self.points_spent,
            "discount_applied_cents": self.discount_applied_cents,
        }


def calculate_points_to_earn(amount_cents: int, points_per_100: int | None = None) -> int:
    """floor(amount / 100 currency units) * POINTS_PER_100. Amount is in minor units."""
    if points_per_100 is None:
        points_per_100 = current_app.config["POINTS_PER_100"]
    if amount_cents <= 0:
        return 0
    return (amount_cents // 10_000) * points_per_100


def _require_phone(phone) -> str:
    normalized = normalize_phone(phone)
    if not normalized:
        raise ValidationError("customer_phone is required")
    return normalized


def get_loyalty_account(store_id: int, phone: str) -> LoyaltyAccount | None:
    return (
        db.session.query(LoyaltyAccount)
        .filter_by(store_id=store_id, customer_phone=_require_phone(phone))
        .first()
    )


def get_or_create_account(store_id: int, phone: str, name: str | None = None) -> tuple[LoyaltyAccount, bool]:
    """
    Fetch the (store, phone) account, creating it on first purchase.

    Must be the first write of its transaction: a concurrent creation is
    detected through the unique constraint, which rolls the transaction back
    before re-reading the winner's row.
    """
    phone = _require_phone(phone)
    account = get_loyalty_account(store_id, phone)
    if account is not None:
        if name and not account.customer_name:
            account.customer_name = name
        return account, False

    account = LoyaltyAccount(
        store_id=store_id,
        customer_phone=phone,
        customer_name=name,
        total_points=0,
        lifetime_points=0,
    )
    db.session.add(account)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        account = get_loyalty_account(store_id, phone)
        if account is None:
            raise
        return account, False

    logger.info("Created loyalty account %s for store %s", account.id, store_id)
    return account, True


def _earn_inner(account: LoyaltyAccount, amount_cents: int, order_id: int | None) -> int:
    points = calculate_points_to_earn(amount_cents)
    if points == 0:
        return 0

    db.session.add(LoyaltyTransaction(
        loyalty_account_id=account.id,
        order_id=order_id,
        transaction_type="earned",
        points=points,
        description=f"Earned {points} points for purchase of {amount_cents / 100:.2f}",
    ))
    db.session.execute(
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id)
        .values(
            total_points=LoyaltyAccount.total_points + points,
            lifetime_points=LoyaltyAccount.lifetime_points + points,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.flush()
    db.session.refresh(account, attribute_names=["total_points", "lifetime_points"])
    return points


def get_active_reward(store_id: int, reward_id: int) -> LoyaltyReward:
    reward = db.session.get(LoyaltyReward, reward_id)
    if reward is None or reward.store_id != store_id:
        raise RewardUnavailableError("Reward not found", details={"reward_id": reward_id})
    if not reward.is_active:
        raise RewardUnavailableError("Reward is not active", details={"reward_id": reward_id})
    if reward.max_redemptions is not None and reward.current_redemptions >= reward.max_redemptions:
        raise RewardUnavailableError("Reward is fully redeemed", details={"reward_id": reward_id})
    return reward


def _redeem_inner(
    account: LoyaltyAccount,
    reward: LoyaltyReward,
    order_id: int | None,
    order_total_cents: int | None,
) -> RedemptionResult:
    cost = reward.points_required

    debit = (
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id, LoyaltyAccount.total_points >= cost)
        .values(total_points=LoyaltyAccount.total_points - cost)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(debit).rowcount != 1:
        db.session.refresh(account, attribute_names=["total_points"])
        raise InsufficientPointsError(
            "Insufficient points",
            details={"points_required": cost, "total_points": account.total_points},
        )

    claim = (
        update(LoyaltyReward)
        .where(
            LoyaltyReward.id == reward.id,
            LoyaltyReward.is_active.is_(True),
            or_(
                LoyaltyReward.max_redemptions.is_(None),
                LoyaltyReward.current_redemptions < LoyaltyReward.max_redemptions,
            ),
        )
        .values(current_redemptions=LoyaltyReward.current_redemptions + 1)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(claim).rowcount != 1:
        raise RewardUnavailableError("Reward is no longer available", details={"reward_id": reward.id})

    if order_total_cents is not None:
        discount = reward_discount_cents(reward.discount_type, reward.discount_value, order_total_cents)
    elif reward.discount_type == "fixed":
        discount = reward.discount_value
    else:
        discount = 0

    redemption = RewardRedemption(
        reward_id=reward.id,
        loyalty_account_id=account.id,
        order_id=order_id,
        points_spent=cost,
        discount_applied_cents=discount,
    )
    db.session.add(redemption)
    db.session.add(LoyaltyTransaction(
        loyalty_account_id=account.id,
        order_id=order_id,
        transaction_type="redeemed",
        points=-cost,
        description=f"Redeemed {reward.name} for {cost} points",
    ))
    db.session.flush()
    db.session.refresh(account, attribute_names=["total_points"])
    db.session.refresh(reward, attribute_names=["current_redemptions"])

    return RedemptionResult(
        redemption_id=redemption.id,
        reward_id=reward.id,
        account_id=account.id,
        points_spent=cost,
        discount_applied_cents=discount,
    )


def earn_points(
    store_id: int,
    phone: str,
    amount_cents: int,
    *,
    order_id: int | None = None,
    customer_name: str | None = None,
    commit: bool = True,
) -> EarnResult:
    """
    Award points for a purchase, creating the account if needed.

    No transaction is written when the amount earns zero points.
    """
    def _op():
        account, created = get_or_create_account(store_id, phone, customer_name)
        points = _earn_inner(account, amount_cents, order_id)
        if commit:
            db.session.commit()
        return EarnResult(
            account_id=account.id,
            points_earned=points,
            total_points=account.total_points,
            lifetime_points=account.lifetime_points,
            tier=account.tier,
            account_created=created,
        )

    if not commit:
        return _op()
    return run_with_retry(_op)


def redeem_reward(
    store_id: int,
    phone: str,
    reward_id: int,
    *,
    order_id: int | None = None,
    order_total_cents: int | None = None,
    commit: bool = True,
) -> RedemptionResult:
    """
    Spend points on a reward.

    Raises InsufficientPointsError when total_points < points_required at the
    moment of the debit; nothing is written in that case. With commit=False
    the caller must roll back on any LoyaltyError.
    """
    def _op():
        account = get_loyalty_account(store_id, phone)
        if account is None:
            raise AccountNotFoundError("Loyalty account not found", details={"store_id": store_id})
        reward = get_active_reward(store_id, reward_id)
        try:
            result = _redeem_inner(account, reward, order_id, order_total_cents)
        except LoyaltyError:
            if commit:
                db.session.rollback()
            raise
        if commit:
            db.session.commit()
        return result

    if not commit:
        return _op()
    return run_with_retry(_op)


def list_active_rewards(store_id: int) -> list[LoyaltyReward]:
    return (
        db.session.query(LoyaltyReward)
        .filter_by(store_id=store_id, is_active=True)
        .order_by(LoyaltyReward.points_required.asc(), LoyaltyReward.id.asc())
        .all()
    )


def list_transactions(account_id: int, limit: int = 50) -> list[LoyaltyTransaction]:
    return (
        db.session.query(LoyaltyTransaction)
        .filter_by(loyalty_account_id=account_id)
        .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )
