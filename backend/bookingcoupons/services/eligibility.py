"""Decide whether a coupon applies to an order.

``evaluate`` is a pure function: it reads the coupon definition and the order
context and never touches the database or usage counters. Checks run in a fixed
order and the first failure wins, so callers always see the same reason for the
same input.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Union
from uuid import UUID

from bookingcoupons.core.clock import as_utc, utcnow
from bookingcoupons.models.coupons import CouponScope
from bookingcoupons.services.errors import IneligibilityReason
from bookingcoupons.services.pricing import to_decimal


@dataclass(frozen=True)
class LineItem:
    id: str
    service_id: UUID
    amount: Decimal


@dataclass(frozen=True)
class OrderContext:
    tenant_id: UUID
    customer_id: str
    line_items: Sequence[LineItem] = ()
    order_subtotal: Decimal | None = None
    now: datetime = field(default_factory=utcnow)

    @property
    def subtotal(self) -> Decimal:
        if self.order_subtotal is not None:
            return to_decimal(self.order_subtotal)
        return sum((to_decimal(item.amount) for item in self.line_items), start=Decimal("0"))


@dataclass(frozen=True)
class Eligible:
    line_items: tuple[LineItem, ...]

    @property
    def subtotal(self) -> Decimal:
        return sum((to_decimal(item.amount) for item in self.line_items), start=Decimal("0"))

    @property
    def line_item_ids(self) -> list[str]:
        return [item.id for item in self.line_items]


@dataclass(frozen=True)
class Ineligible:
    reason: IneligibilityReason


EligibilityResult = Union[Eligible, Ineligible]


def _window_reason(coupon: Any, now: datetime) -> IneligibilityReason | None:
    current = as_utc(now)
    starts_at = as_utc(getattr(coupon, "starts_at", None))
    ends_at = as_utc(getattr(coupon, "ends_at", None))
    if starts_at is not None and current < starts_at:
        return IneligibilityReason.not_yet_started
    if ends_at is not None and current > ends_at:
        return IneligibilityReason.expired
    return None


def evaluate(coupon: Any, context: OrderContext) -> EligibilityResult:
    if not coupon.is_active:
        return Ineligible(IneligibilityReason.inactive)

    window_reason = _window_reason(coupon, context.now)
    if window_reason is not None:
        return Ineligible(window_reason)

    if coupon.min_order_value is not None and context.subtotal < to_decimal(coupon.min_order_value):
        return Ineligible(IneligibilityReason.below_minimum)

    if coupon.scope == CouponScope.service_scoped:
        allowed = set(coupon.service_ids)
        matching = tuple(item for item in context.line_items if item.service_id in allowed)
        if not matching:
            return Ineligible(IneligibilityReason.no_eligible_services)
        return Eligible(line_items=matching)

    return Eligible(line_items=tuple(context.line_items))
