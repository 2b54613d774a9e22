from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcoupons.core.dependencies import get_coupon_service, get_service_catalog
from bookingcoupons.db.session import get_session
from bookingcoupons.models.coupons import Coupon
from bookingcoupons.schemas.coupons import (
    CouponActiveUpdate,
    CouponCreate,
    CouponPriceRead,
    CouponRead,
    CouponServicesUpdate,
    CouponUpdate,
    CouponUsageRead,
    CouponValidateRequest,
    ReservationConfirm,
    ReservationCreate,
    ReservationRead,
    ReservationRelease,
    ReservationTokenRead,
)
from bookingcoupons.services import coupon_registry
from bookingcoupons.services.collaborators import ServiceCatalog
from bookingcoupons.services.coupon_service import CouponService


router = APIRouter(prefix="/tenants/{tenant_id}/coupons", tags=["coupons"])


def _to_coupon_read(coupon: Coupon) -> CouponRead:
    base = CouponRead.model_validate(coupon, from_attributes=True)
    return base.model_copy(update={"service_ids": sorted(coupon.service_ids, key=str)})


@router.get("", response_model=list[CouponRead])
async def list_coupons(
    tenant_id: UUID,
    q: str | None = Query(default=None, max_length=120),
    status_filter: str | None = Query(default=None, alias="status", pattern="^(active|inactive)$"),
    session: AsyncSession = Depends(get_session),
) -> list[CouponRead]:
    coupons = await coupon_registry.list_coupons(session, tenant_id=tenant_id, search=q, status=status_filter)
    return [_to_coupon_read(coupon) for coupon in coupons]


@router.post("", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    tenant_id: UUID,
    payload: CouponCreate,
    session: AsyncSession = Depends(get_session),
    catalog: ServiceCatalog = Depends(get_service_catalog),
) -> CouponRead:
    coupon = await coupon_registry.create_coupon(session, payload, tenant_id=tenant_id, catalog=catalog)
    return _to_coupon_read(coupon)


@router.post("/validate", response_model=CouponPriceRead)
async def validate_coupon(
    tenant_id: UUID,
    payload: CouponValidateRequest,
    service: CouponService = Depends(get_coupon_service),
) -> CouponPriceRead:
    priced = await service.validate_and_price(payload.code, tenant_id, payload.customer_id, payload.order)
    return CouponPriceRead(
        coupon_id=priced.coupon_id,
        code=priced.code,
        discount_amount=priced.discount_amount,
        eligible_subtotal=priced.eligible_subtotal,
        eligible_line_item_ids=priced.eligible_line_item_ids,
    )


@router.get("/reservations/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    tenant_id: UUID,
    reservation_id: UUID,
    service: CouponService = Depends(get_coupon_service),
) -> ReservationRead:
    record = await service.ledger.get(reservation_id, tenant_id=tenant_id)
    return ReservationRead.model_validate(record, from_attributes=True)


@router.post("/reservations/{reservation_id}/confirm", response_model=ReservationRead)
async def confirm_reservation(
    tenant_id: UUID,
    reservation_id: UUID,
    payload: ReservationConfirm,
    service: CouponService = Depends(get_coupon_service),
) -> ReservationRead:
    record = await service.confirm(
        reservation_id,
        payload.booking_id,
        amount_discounted=payload.amount_discounted,
        tenant_id=tenant_id,
    )
    return ReservationRead.model_validate(record, from_attributes=True)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationRead)
async def release_reservation(
    tenant_id: UUID,
    reservation_id: UUID,
    payload: ReservationRelease | None = None,
    service: CouponService = Depends(get_coupon_service),
) -> ReservationRead:
    reason = payload.reason if payload else None
    record = await service.release(reservation_id, reason=reason, tenant_id=tenant_id)
    return ReservationRead.model_validate(record, from_attributes=True)


@router.get("/{coupon_id}", response_model=CouponRead)
async def get_coupon(
    tenant_id: UUID,
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    coupon = await coupon_registry.get_coupon(session, coupon_id, tenant_id=tenant_id)
    return _to_coupon_read(coupon)


@router.patch("/{coupon_id}", response_model=CouponRead)
async def update_coupon(
    tenant_id: UUID,
    coupon_id: UUID,
    payload: CouponUpdate,
    session: AsyncSession = Depends(get_session),
    catalog: ServiceCatalog = Depends(get_service_catalog),
) -> CouponRead:
    coupon = await coupon_registry.update_coupon(session, coupon_id, payload, tenant_id=tenant_id, catalog=catalog)
    return _to_coupon_read(coupon)


@router.put("/{coupon_id}/active", response_model=CouponRead)
async def set_coupon_active(
    tenant_id: UUID,
    coupon_id: UUID,
    payload: CouponActiveUpdate,
    session: AsyncSession = Depends(get_session),
) -> CouponRead:
    coupon = await coupon_registry.set_active(session, coupon_id, payload.is_active, tenant_id=tenant_id)
    return _to_coupon_read(coupon)


@router.put("/{coupon_id}/services", response_model=CouponRead)
async def set_coupon_services(
    tenant_id: UUID,
    coupon_id: UUID,
    payload: CouponServicesUpdate,
    session: AsyncSession = Depends(get_session),
    catalog: ServiceCatalog = Depends(get_service_catalog),
) -> CouponRead:
    coupon = await coupon_registry.set_service_eligibility(
        session, coupon_id, payload.service_ids, tenant_id=tenant_id, catalog=catalog
    )
    return _to_coupon_read(coupon)


@router.get("/{coupon_id}/usage", response_model=CouponUsageRead)
async def coupon_usage(
    tenant_id: UUID,
    coupon_id: UUID,
    service: CouponService = Depends(get_coupon_service),
) -> CouponUsageRead:
    usage = await service.ledger.usage(coupon_id, tenant_id=tenant_id)
    return CouponUsageRead(
        coupon_id=usage.coupon_id,
        confirmed=usage.confirmed,
        reserved=usage.reserved,
        total_usage_limit=usage.total_usage_limit,
        remaining=usage.remaining,
        per_customer=usage.per_customer,
    )


@router.post("/{coupon_id}/reservations", response_model=ReservationTokenRead, status_code=status.HTTP_201_CREATED)
async def reserve_coupon(
    tenant_id: UUID,
    coupon_id: UUID,
    payload: ReservationCreate,
    service: CouponService = Depends(get_coupon_service),
) -> ReservationTokenRead:
    token = await service.reserve(coupon_id, tenant_id, payload.customer_id, amount_discounted=payload.amount_discounted)
    return ReservationTokenRead.model_validate(token, from_attributes=True)
