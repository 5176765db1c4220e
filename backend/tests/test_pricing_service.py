import pytest

from storefront.services.pricing_service import CartLine, calculate_totals, reward_discount_cents
from storefront.validation import ValidationError


def test_discount_then_gst_on_two_units():
    # 1000.00 x 2, 10% off, 18% GST
    b = calculate_totals([CartLine(unit_price_cents=100_000, quantity=2)], 10, 1800)

    assert b.subtotal_cents == 200_000
    assert b.discount_cents == 20_000
    assert b.taxable_cents == 180_000
    assert b.tax_cents == 32_400
    assert b.total_cents == 212_400


def test_total_identity_holds_after_rounding():
    lines = [CartLine(unit_price_cents=333, quantity=3), CartLine(unit_price_cents=1_999, quantity=1)]
    for pct in (0, 5, 10, 15, 20):
        b = calculate_totals(lines, pct, 1800)
        assert b.total_cents == b.subtotal_cents - b.discount_cents + b.tax_cents
        assert 0 <= b.discount_cents <= b.subtotal_cents


def test_rounding_is_half_up():
    # 5% of 10 = 0.5 -> 1; 18% of 25 = 4.5 -> 5
    assert calculate_totals([CartLine(10, 1)], 5, 0).discount_cents == 1
    assert calculate_totals([CartLine(25, 1)], 0, 1800).tax_cents == 5


def test_empty_cart_prices_to_zero():
    b = calculate_totals([], 0, 1800)
    assert b.total_cents == 0


def test_disallowed_discount_tier_rejected():
    with pytest.raises(ValidationError):
        calculate_totals([CartLine(1000, 1)], 7, 1800, allowed_discounts=(0, 5, 10, 15, 20))


@pytest.mark.parametrize("line", [CartLine(-1, 1), CartLine(100, 0)])
def test_invalid_lines_rejected(line):
    with pytest.raises(ValidationError):
        calculate_totals([line], 0, 1800)


def test_reward_discounts_are_capped_at_total():
    assert reward_discount_cents("fixed", 5_000, 3_000) == 3_000
    assert reward_discount_cents("percentage", 10, 212_400) == 21_240
    with pytest.raises(ValidationError):
        reward_discount_cents("bogus", 1, 100)
