from __future__ import annotations

from decimal import Decimal
from typing import Any

from bookingcoupons.models.coupons import CouponDiscountType
from bookingcoupons.services.pricing import quantize_money, to_decimal


def compute_discount(coupon: Any, eligible_subtotal: Decimal, *, minor_units: int | None = None) -> Decimal:
    """Discount for the eligible part of an order, rounded half-even once at the end."""
    subtotal = to_decimal(eligible_subtotal)
    if subtotal <= 0:
        return quantize_money(Decimal("0"), minor_units=minor_units)

    value = to_decimal(coupon.discount_value)
    if coupon.discount_type == CouponDiscountType.percentage:
        amount = subtotal * value / Decimal("100")
        if coupon.max_discount_amount is not None:
            amount = min(amount, to_decimal(coupon.max_discount_amount))
    else:
        amount = min(value, subtotal)

    rounded = quantize_money(max(amount, Decimal("0")), minor_units=minor_units)
    if rounded > subtotal:
        # Sub-cent subtotals must not round the discount above the subtotal itself.
        rounded = quantize_money(subtotal, rounding="down", minor_units=minor_units)
    return rounded
