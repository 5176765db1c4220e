# Overview: Service-layer operations for inventory; owns variant stock and the movement ledger.

# backend/storefront/services/inventory_service.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models import Product, ProductVariant, InventoryMovement, MOVEMENT_TYPES
from .concurrency import run_with_retry
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- ProductVariant.stock_quantity is the live counter; InventoryMovement is the
  append-only audit trail behind it.
- stock_quantity == opening_stock + SUM(quantity_change) for every variant.
- Every change to stock_quantity writes exactly one movement in the same DB
  transaction, with the delta that was actually applied.

Concurrency:
- stock_quantity is never read-modified-written in Python. Decrements use
  UPDATE ... SET stock = stock + :delta WHERE id = :id AND stock + :delta >= 0
  and check the affected-row count.
- When that guard fails the sale is oversold: the remaining stock is taken
  with a compare-and-swap UPDATE (WHERE stock = :seen) and the shortfall is
  reported on the result and the movement (requested_change vs quantity_change).

Sign rules:
- sale: delta < 0
- restock, return: delta > 0
- adjustment: any non-zero delta; decrements clamp like sales
"""

logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """Raised for inventory operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class VariantNotFoundError(InventoryError):
    pass


class StockConflictError(InventoryError):
    """Stock changed between the oversell read and the clamp; safe to retry."""


@dataclass(frozen=True)
class StockAdjustment:
    variant_id: int
    movement_id: int
    movement_type: str
    requested_delta: int
    applied_delta: int
    new_quantity: int

    @property
    def oversold_units(self) -> int:
        return abs(self.requested_delta) - abs(self.applied_delta)

    @property
    def oversold(self) -> bool:
        return self.oversold_units > 0

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "movement_id": self.movement_id,
            "movement_type": self.movement_type,
            "requested_delta": self.requested_delta,
            "applied_delta": self.applied_delta,
            "new_quantity": self.new_quantity,
            "oversold_units": self.oversold_units,
        }


def _validate_delta(delta: int, reason: str) -> None:
    if reason not in MOVEMENT_TYPES:
        raise InventoryError(f"Unknown movement type {reason!r}", details={"allowed": list(MOVEMENT_TYPES)})
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InventoryError("delta must be an integer")
    if delta == 0:
        raise InventoryError("delta must be non-zero")
    if reason == "sale" and delta > 0:
        raise InventoryError("sale movements must decrease stock")
    if reason in ("restock", "return") and delta < 0:
        raise InventoryError(f"{reason} movements must increase stock")


def _apply_delta(variant: ProductVariant, delta: int) -> int:
    """Apply delta atomically; returns the delta actually applied."""
    guarded = (
        update(ProductVariant)
        .where(
            ProductVariant.id == variant.id,
            ProductVariant.stock_quantity + delta >= 0,
        )
        .values(stock_quantity=ProductVariant.stock_quantity + delta)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(guarded).rowcount == 1:
        return delta

    # Oversell: take what is left, but only if nobody moved it meanwhile
    seen = db.session.query(ProductVariant.stock_quantity).filter_by(id=variant.id).scalar()
    if seen is None:
        raise VariantNotFoundError("Variant not found", details={"variant_id": variant.id})
    if seen == 0:
        return 0

    clamp = (
        update(ProductVariant)
        .where(ProductVariant.id == variant.id, ProductVariant.stock_quantity == seen)
        .values(stock_quantity=0)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(clamp).rowcount != 1:
        raise StockConflictError("Stock changed while clamping oversell", details={"variant_id": variant.id})
    return -seen


def _adjust_stock_inner(
    *,
    variant_id: int,
    delta: int,
    reason: str,
    order_id: int | None = None,
    order_item_id: int | None = None,
    reverses_movement_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockAdjustment:
    """Core adjustment without retry or commit. Caller owns the transaction."""
    _validate_delta(delta, reason)

    variant = db.session.get(ProductVariant, variant_id)
    if variant is None:
        raise VariantNotFoundError("Variant not found", details={"variant_id": variant_id})

    applied = _apply_delta(variant, delta)

    movement = InventoryMovement(
        variant_id=variant_id,
        movement_type=reason,
        quantity_change=applied,
        requested_change=delta,
        order_id=order_id,
        order_item_id=order_item_id,
        reverses_movement_id=reverses_movement_id,
        note=note,
        created_by_user_id=user_id,
    )
    db.session.add(movement)
    db.session.flush()

    db.session.refresh(variant, attribute_names=["stock_quantity"])

    result = StockAdjustment(
        variant_id=variant_id,
        movement_id=movement.id,
        movement_type=reason,
        requested_delta=delta,
        applied_delta=applied,
        new_quantity=variant.stock_quantity,
    )
    if result.oversold:
        logger.warning(
            "Oversell on variant %s: requested %s, applied %s (order_id=%s)",
            variant_id, delta, applied, order_id,
        )
    return result


def adjust_stock(
    variant_id: int,
    delta: int,
    reason: str,
    *,
    order_id: int | None = None,
    order_item_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
    commit: bool = True,
) -> StockAdjustment:
    """
    Change a variant's stock and append the matching movement.

    Decrements never drive stock below zero: a short decrement is clamped and
    reported through StockAdjustment.oversold_units rather than rejected, so
    the sale can still complete with a warning.

    commit=False leaves the transaction open for the caller and skips the
    retry loop, since a retry would roll back the caller's pending work.
    """
    def _op():
        result = _adjust_stock_inner(
            variant_id=variant_id,
            delta=delta,
            reason=reason,
            order_id=order_id,
            order_item_id=order_item_id,
            note=note,
            user_id=user_id,
        )
        db.session.commit()
        return result

    if not commit:
        return _adjust_stock_inner(
            variant_id=variant_id,
            delta=delta,
            reason=reason,
            order_id=order_id,
            order_item_id=order_item_id,
            note=note,
            user_id=user_id,
        )

    try:
        return run_with_retry(_op)
    except StockConflictError:
        db.session.rollback()
        return run_with_retry(_op)


def reverse_order_movements(order_id: int, *, user_id: int | None = None, commit: bool = True) -> list[StockAdjustment]:
    """
    Compensate an order's sale movements with matching return movements.

    Idempotent: a movement that already has a reversal is skipped.
    """
    def _op():
        reversal = aliased(InventoryMovement)
        pending = (
            db.session.query(InventoryMovement)
            .outerjoin(reversal, reversal.reverses_movement_id == InventoryMovement.id)
            .filter(
                InventoryMovement.order_id == order_id,
                InventoryMovement.movement_type == "sale",
                InventoryMovement.quantity_change < 0,
                reversal.id.is_(None),
            )
            .order_by(InventoryMovement.id)
            .all()
        )

        results = []
        for movement in pending:
            results.append(_adjust_stock_inner(
                variant_id=movement.variant_id,
                delta=-movement.quantity_change,
                reason="return",
                order_id=order_id,
                order_item_id=movement.order_item_id,
                reverses_movement_id=movement.id,
                note=f"Reversal of movement {movement.id}",
                user_id=user_id,
            ))
        if commit:
            db.session.commit()
        return results

    if not commit:
        return _op()
    return run_with_retry(_op)


def get_variant_stock(variant_id: int) -> dict:
    variant = db.session.get(ProductVariant, variant_id)
    if variant is None:
        raise VariantNotFoundError("Variant not found", details={"variant_id": variant_id})
    threshold = _threshold_for(variant)
    return {
        "variant_id": variant.id,
        "product_id": variant.product_id,
        "sku": variant.sku,
        "stock_quantity": variant.stock_quantity,
        "low_stock_threshold": threshold,
        "is_low_stock": variant.stock_quantity <= threshold,
    }


def list_movements(variant_id: int, limit: int = 50) -> list[InventoryMovement]:
    if db.session.get(ProductVariant, variant_id) is None:
        raise VariantNotFoundError("Variant not found", details={"variant_id": variant_id})
    return (
        db.session.query(InventoryMovement)
        .filter_by(variant_id=variant_id)
        .order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .limit(limit)
        .all()
    )


# Reorder suggestions are business policy: (stock, threshold, config) -> quantity.
# Every policy must grow (never shrink) as stock falls further below threshold.

def _reorder_threshold_multiple(stock: int, threshold: int, config) -> int:
    return max(threshold * config["REORDER_MULTIPLIER"] - stock, 0)


def _reorder_fill_to_target(stock: int, threshold: int, config) -> int:
    target = max(config["REORDER_TARGET_STOCK"], threshold + 1)
    return max(target - stock, 0)


REORDER_POLICIES: dict[str, Callable[[int, int, dict], int]] = {
    "threshold_multiple": _reorder_threshold_multiple,
    "fill_to_target": _reorder_fill_to_target,
}


def _resolve_policy(policy) -> Callable[[int, int, dict], int]:
    if policy is None:
        policy = current_app.config["REORDER_POLICY"]
    if callable(policy):
        return policy
    try:
        return REORDER_POLICIES[policy]
    except KeyError:
        raise InventoryError(f"Unknown reorder policy {policy!r}", details={"allowed": sorted(REORDER_POLICIES)})


def _threshold_for(variant: ProductVariant) -> int:
    if variant.low_stock_threshold is not None:
        return variant.low_stock_threshold
    return current_app.config["DEFAULT_LOW_STOCK_THRESHOLD"]


def query_low_stock(store_id: int, policy=None) -> list[dict]:
    """
    Variants at or below their low-stock threshold, most depleted first.

    policy may be a registered policy name or a callable; defaults to
    REORDER_POLICY from config.
    """
    reorder = _resolve_policy(policy)
    default_threshold = current_app.config["DEFAULT_LOW_STOCK_THRESHOLD"]
    threshold_expr = func.coalesce(ProductVariant.low_stock_threshold, default_threshold)

    rows = (
        db.session.query(ProductVariant, Product)
        .join(Product, Product.id == ProductVariant.product_id)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            ProductVariant.stock_quantity <= threshold_expr,
        )
        .order_by(ProductVariant.stock_quantity.asc(), ProductVariant.id.asc())
        .all()
    )

    items = []
    for variant, product in rows:
        threshold = _threshold_for(variant)
        items.append({
            "variant_id": variant.id,
            "product_id": product.id,
            "product_name": product.name,
            "sku": variant.sku,
            "stock_quantity": variant.stock_quantity,
            "low_stock_threshold": threshold,
            "suggested_reorder_qty": reorder(variant.stock_quantity, threshold, current_app.config),
        })
    return items


def get_inventory_stats(store_id: int) -> dict:
    default_threshold = current_app.config["DEFAULT_LOW_STOCK_THRESHOLD"]
    variants = (
        db.session.query(ProductVariant)
        .join(Product, Product.id == ProductVariant.product_id)
        .filter(Product.store_id == store_id)
        .all()
    )

    stats = {
        "store_id": store_id,
        "total_variants": len(variants),
        "in_stock": 0,
        "low_stock": 0,
        "out_of_stock": 0,
        "total_units": 0,
    }
    for v in variants:
        threshold = v.low_stock_threshold if v.low_stock_threshold is not None else default_threshold
        stats["total_units"] += v.stock_quantity
        if v.stock_quantity == 0:
            stats["out_of_stock"] += 1
        elif v.stock_quantity <= threshold:
            stats["low_stock"] += 1
        else:
            stats["in_stock"] += 1
    return stats
