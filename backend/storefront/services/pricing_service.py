"""
Pricing calculator for the till.

Pure functions only: no database access, no clock, no config lookups except
where the caller passes values in. All money is integer minor units; rates
are basis points.

    subtotal = SUM(unit_price * quantity)
    discount = subtotal * discount_percent / 100
    taxable  = subtotal - discount
    tax      = taxable * tax_rate_bps / 10000
    total    = taxable + tax

Rounding is nearest minor unit, half-up, applied to discount and tax only,
so total == subtotal - discount + tax holds exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from ..validation import ValidationError, MAX_PRICE_CENTS


@dataclass(frozen=True)
class CartLine:
    unit_price_cents: int
    quantity: int
    product_id: int | None = None
    variant_id: int | None = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal_cents: int
    discount_percent: int
    discount_cents: int
    taxable_cents: int
    tax_rate_bps: int
    tax_cents: int
    total_cents: int

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "discount_percent": self.discount_percent,
            "discount_cents": self.discount_cents,
            "taxable_cents": self.taxable_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


def _round_half_up(numerator: int, denominator: int) -> int:
    return (numerator + denominator // 2) // denominator


def calculate_totals(
    lines: Iterable[CartLine],
    discount_percent: int,
    tax_rate_bps: int,
    *,
    allowed_discounts: Sequence[int] | None = None,
) -> PriceBreakdown:
    """Price a cart. Raises ValidationError on negative or malformed input."""
    if discount_percent < 0 or discount_percent > 100:
        raise ValidationError("discount_percent must be between 0 and 100")
    if allowed_discounts is not None and discount_percent not in allowed_discounts:
        raise ValidationError(f"discount_percent {discount_percent} is not an allowed discount tier")
    if tax_rate_bps < 0:
        raise ValidationError("tax_rate_bps must be >= 0")

    subtotal = 0
    for line in lines:
        if line.unit_price_cents < 0:
            raise ValidationError("unit price must be >= 0")
        if line.unit_price_cents > MAX_PRICE_CENTS:
            raise ValidationError("unit price exceeds maximum")
        if line.quantity < 1:
            raise ValidationError("quantity must be >= 1")
        subtotal += line.line_total_cents

    discount = _round_half_up(subtotal * discount_percent, 100)
    taxable = subtotal - discount
    tax = _round_half_up(taxable * tax_rate_bps, 10_000)

    return PriceBreakdown(
        subtotal_cents=subtotal,
        discount_percent=discount_percent,
        discount_cents=discount,
        taxable_cents=taxable,
        tax_rate_bps=tax_rate_bps,
        tax_cents=tax,
        total_cents=taxable + tax,
    )


def reward_discount_cents(discount_type: str, discount_value: int, total_cents: int) -> int:
    """
    Discount granted by a loyalty reward against an order total.

    percentage rewards take discount_value percent of the total; fixed rewards
    take discount_value minor units. Never more than the total itself.
    """
    if discount_value < 0:
        raise ValidationError("reward discount_value must be >= 0")
    if discount_type == "percentage":
        amount = _round_half_up(total_cents * discount_value, 100)
    elif discount_type == "fixed":
        amount = discount_value
    else:
        raise ValidationError(f"unknown reward discount_type {discount_type!r}")
    return min(amount, total_cents)
