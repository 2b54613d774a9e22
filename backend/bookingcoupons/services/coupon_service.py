from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookingcoupons.core import metrics
from bookingcoupons.core.clock import as_utc, utcnow
from bookingcoupons.core.config import settings
from bookingcoupons.models.coupons import RedemptionState
from bookingcoupons.schemas.coupons import OrderQuote
from bookingcoupons.services import coupon_registry
from bookingcoupons.services.collaborators import TenantDirectory
from bookingcoupons.services.discounts import compute_discount
from bookingcoupons.services.eligibility import Ineligible, LineItem, OrderContext, evaluate
from bookingcoupons.services.errors import IneligibilityReason, IneligibleError, NotFoundError
from bookingcoupons.services.redemption_ledger import (
    RedemptionLedger,
    RedemptionRecord,
    ReservationToken,
    TokenRef,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedCoupon:
    coupon_id: UUID
    code: str
    discount_amount: Decimal
    eligible_subtotal: Decimal
    eligible_line_item_ids: list[str]


@dataclass(frozen=True)
class PricedReservation:
    price: PricedCoupon
    token: ReservationToken


def order_context(order: OrderQuote, *, tenant_id: UUID, customer_id: str, now: datetime | None = None) -> OrderContext:
    return OrderContext(
        tenant_id=tenant_id,
        customer_id=customer_id,
        line_items=tuple(LineItem(id=item.id, service_id=item.service_id, amount=item.amount) for item in order.line_items),
        order_subtotal=order.subtotal,
        now=as_utc(now) if now is not None else utcnow(),
    )


class CouponService:
    """Booking-workflow entry point: price a code, then reserve/confirm/release it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ledger: RedemptionLedger,
        tenants: TenantDirectory,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.tenants = tenants

    async def validate_and_price(
        self,
        code: str,
        tenant_id: UUID,
        customer_id: str,
        order: OrderQuote,
        *,
        now: datetime | None = None,
    ) -> PricedCoupon:
        async with self._session_factory() as session:
            coupon = await coupon_registry.get_coupon_by_code(session, tenant_id=tenant_id, code=code)
        if coupon is None:
            raise NotFoundError("Coupon not found")

        if not await self.tenants.is_tenant_active(tenant_id):
            metrics.record_ineligible(IneligibilityReason.tenant_inactive.value)
            raise IneligibleError(IneligibilityReason.tenant_inactive)

        context = order_context(order, tenant_id=tenant_id, customer_id=customer_id, now=now)
        result = evaluate(coupon, context)
        if isinstance(result, Ineligible):
            metrics.record_ineligible(result.reason.value)
            logger.info(
                "coupon_ineligible",
                extra={"coupon_id": str(coupon.id), "customer_id": customer_id, "reason": result.reason.value},
            )
            raise IneligibleError(result.reason)

        eligible_subtotal = result.subtotal
        return PricedCoupon(
            coupon_id=coupon.id,
            code=coupon.code,
            discount_amount=compute_discount(coupon, eligible_subtotal),
            eligible_subtotal=eligible_subtotal,
            eligible_line_item_ids=result.line_item_ids,
        )

    async def reserve(
        self,
        coupon_id: UUID,
        tenant_id: UUID,
        customer_id: str,
        *,
        amount_discounted: Decimal = Decimal("0"),
    ) -> ReservationToken:
        return await self.ledger.reserve(coupon_id, tenant_id, customer_id, amount_discounted=amount_discounted)

    async def price_and_reserve(
        self,
        code: str,
        tenant_id: UUID,
        customer_id: str,
        order: OrderQuote,
    ) -> PricedReservation:
        price = await self.validate_and_price(code, tenant_id, customer_id, order)
        token = await self.reserve(price.coupon_id, tenant_id, customer_id, amount_discounted=price.discount_amount)
        return PricedReservation(price=price, token=token)

    async def confirm(
        self,
        token: TokenRef,
        booking_id: UUID,
        *,
        amount_discounted: Decimal | None = None,
        tenant_id: UUID | None = None,
    ) -> RedemptionRecord:
        return await self.ledger.confirm(token, booking_id, amount_discounted=amount_discounted, tenant_id=tenant_id)

    async def release(
        self, token: TokenRef, *, reason: str | None = None, tenant_id: UUID | None = None
    ) -> RedemptionRecord:
        return await self.ledger.release(token, reason=reason, tenant_id=tenant_id)

    async def release_for_cancelled_booking(
        self,
        session: AsyncSession,
        booking_id: UUID,
        *,
        tenant_id: UUID,
        cancelled_at: datetime | None = None,
        reservations: Iterable[TokenRef] = (),
    ) -> list[RedemptionRecord]:
        """Free the coupon slot of a cancelled booking inside the caller's transaction.

        ``reservations`` are tokens the caller still holds for the booking; they are
        always released. Whether a confirmed redemption is released depends on
        ``coupon_release_on_confirmed_cancellation`` and ``coupon_release_grace_minutes``.
        """
        when = as_utc(cancelled_at) if cancelled_at is not None else utcnow()
        released: list[RedemptionRecord] = []
        for record in await self.ledger.records_for_booking(
            session, booking_id=booking_id, tenant_id=tenant_id, reservations=reservations
        ):
            if record.state == RedemptionState.confirmed and not _confirmed_slot_releasable(record, when):
                logger.info(
                    "coupon_kept_after_cancellation",
                    extra={"reservation_id": str(record.id), "booking_id": str(booking_id)},
                )
                continue
            released.append(
                await self.ledger.release_in_session(session, record.id, reason="booking_cancelled", tenant_id=tenant_id)
            )
        return released


def _confirmed_slot_releasable(record: RedemptionRecord, cancelled_at: datetime) -> bool:
    if not settings.coupon_release_on_confirmed_cancellation:
        return False
    grace = settings.coupon_release_grace_minutes
    if grace is None or record.confirmed_at is None:
        return True
    return cancelled_at <= record.confirmed_at + timedelta(minutes=int(grace))
