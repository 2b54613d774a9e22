from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcoupons.core.clock import as_utc
from bookingcoupons.models.coupons import Coupon, CouponDiscountType, CouponScope, CouponServiceEligibility
from bookingcoupons.schemas.coupons import CouponCreate, CouponUpdate
from bookingcoupons.services.collaborators import ServiceCatalog
from bookingcoupons.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CODE_MAX_LEN = 40
_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_CODE_CHARS_RE = re.compile(r"[^A-Z0-9_-]")


def normalize_code(code: str | None) -> str:
    cleaned = _WHITESPACE_RE.sub("", (code or "").upper())
    return _DISALLOWED_CODE_CHARS_RE.sub("", cleaned)


@dataclass
class _CouponFields:
    """Merged coupon definition checked before anything is written."""

    code: str
    name: str
    description: str | None
    discount_type: CouponDiscountType
    discount_value: Decimal | None
    max_discount_amount: Decimal | None
    min_order_value: Decimal | None
    scope: CouponScope
    total_usage_limit: int | None
    per_customer_usage_limit: int | None
    starts_at: datetime | None
    ends_at: datetime | None
    is_active: bool


def _validate_fields(fields: _CouponFields, *, service_ids: set[UUID]) -> None:
    if not fields.code:
        raise ValidationError("Coupon code is empty after normalization")
    if len(fields.code) > CODE_MAX_LEN:
        raise ValidationError(f"Coupon code must be at most {CODE_MAX_LEN} characters")
    if not fields.name:
        raise ValidationError("Coupon name is required")
    if fields.discount_value is None or fields.discount_value <= 0:
        raise ValidationError("Discount value must be greater than zero")
    if fields.discount_type == CouponDiscountType.percentage and fields.discount_value > 100:
        raise ValidationError("Percentage discount cannot exceed 100")
    if fields.max_discount_amount is not None:
        if fields.discount_type == CouponDiscountType.fixed_amount:
            raise ValidationError("Maximum discount only applies to percentage coupons")
        if fields.max_discount_amount < 0:
            raise ValidationError("Maximum discount cannot be negative")
    if fields.min_order_value is not None and fields.min_order_value < 0:
        raise ValidationError("Minimum order value cannot be negative")
    if fields.total_usage_limit is not None and fields.total_usage_limit <= 0:
        raise ValidationError("Total usage limit must be a positive integer")
    if fields.per_customer_usage_limit is not None and fields.per_customer_usage_limit <= 0:
        raise ValidationError("Per-customer usage limit must be a positive integer")
    if fields.starts_at and fields.ends_at and fields.starts_at > fields.ends_at:
        raise ValidationError("Coupon start must be before its end")
    if fields.scope == CouponScope.service_scoped and not service_ids:
        raise ValidationError("Select at least one service for a service-scoped coupon")


async def _ensure_services_exist(service_ids: Iterable[UUID], catalog: ServiceCatalog) -> None:
    for service_id in sorted(set(service_ids), key=str):
        if not await catalog.service_exists(service_id):
            raise NotFoundError(f"Service {service_id} not found")


async def _ensure_code_available(
    session: AsyncSession, *, tenant_id: UUID, code: str, exclude_id: UUID | None = None
) -> None:
    stmt = select(func.count()).select_from(Coupon).where(Coupon.tenant_id == tenant_id, Coupon.code == code)
    if exclude_id is not None:
        stmt = stmt.where(Coupon.id != exclude_id)
    if int((await session.execute(stmt)).scalar_one()) > 0:
        raise ValidationError(f"Coupon code {code} already exists")


async def _commit_definition(session: AsyncSession, *, code: str) -> None:
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent writer of the same code.
        await session.rollback()
        raise ValidationError(f"Coupon code {code} already exists") from None


def _replace_services(coupon: Coupon, service_ids: set[UUID]) -> None:
    current = {link.service_id: link for link in coupon.services}
    coupon.services = [
        current.get(service_id) or CouponServiceEligibility(service_id=service_id)
        for service_id in sorted(service_ids, key=str)
    ]


async def get_coupon(session: AsyncSession, coupon_id: UUID, *, tenant_id: UUID | None = None) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None or (tenant_id is not None and coupon.tenant_id != tenant_id):
        raise NotFoundError("Coupon not found")
    return coupon


async def get_coupon_by_code(session: AsyncSession, *, tenant_id: UUID, code: str) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    res = await session.execute(select(Coupon).where(Coupon.tenant_id == tenant_id, Coupon.code == cleaned))
    return res.scalar_one_or_none()


async def list_coupons(
    session: AsyncSession,
    *,
    tenant_id: UUID,
    search: str | None = None,
    status: str | None = None,
) -> list[Coupon]:
    stmt = select(Coupon).where(Coupon.tenant_id == tenant_id)
    term = (search or "").strip().lower()
    if term:
        like = f"%{term}%"
        stmt = stmt.where(
            or_(
                func.lower(Coupon.code).like(like),
                func.lower(Coupon.name).like(like),
                func.lower(func.coalesce(Coupon.description, "")).like(like),
            )
        )
    if status == "active":
        stmt = stmt.where(Coupon.is_active.is_(True))
    elif status == "inactive":
        stmt = stmt.where(Coupon.is_active.is_(False))
    result = await session.execute(stmt.order_by(Coupon.created_at.desc(), Coupon.code))
    return list(result.scalars().all())


async def create_coupon(
    session: AsyncSession,
    payload: CouponCreate,
    *,
    tenant_id: UUID,
    catalog: ServiceCatalog,
) -> Coupon:
    fields = _CouponFields(
        code=normalize_code(payload.code),
        name=(payload.name or "").strip(),
        description=(payload.description or "").strip() or None,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        max_discount_amount=payload.max_discount_amount,
        min_order_value=payload.min_order_value,
        scope=payload.scope,
        total_usage_limit=payload.total_usage_limit,
        per_customer_usage_limit=payload.per_customer_usage_limit,
        starts_at=as_utc(payload.starts_at),
        ends_at=as_utc(payload.ends_at),
        is_active=payload.is_active,
    )
    service_ids = set(payload.service_ids) if fields.scope == CouponScope.service_scoped else set()
    _validate_fields(fields, service_ids=service_ids)
    await _ensure_code_available(session, tenant_id=tenant_id, code=fields.code)
    await _ensure_services_exist(service_ids, catalog)

    coupon = Coupon(tenant_id=tenant_id, **vars(fields))
    coupon.services = [CouponServiceEligibility(service_id=sid) for sid in sorted(service_ids, key=str)]
    session.add(coupon)
    await _commit_definition(session, code=fields.code)
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_id": str(coupon.id), "tenant_id": str(tenant_id), "code": coupon.code})
    return coupon


async def update_coupon(
    session: AsyncSession,
    coupon_id: UUID,
    patch: CouponUpdate,
    *,
    tenant_id: UUID,
    catalog: ServiceCatalog,
) -> Coupon:
    coupon = await get_coupon(session, coupon_id, tenant_id=tenant_id)
    changes: dict[str, Any] = patch.model_dump(exclude_unset=True)
    requested_services = changes.pop("service_ids", None)

    # Non-nullable columns ignore an explicit null in the patch.
    for key in ("code", "name", "discount_type", "scope", "is_active"):
        if key in changes and changes[key] is None:
            changes.pop(key)
    if "code" in changes:
        changes["code"] = normalize_code(changes["code"])
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    if "description" in changes:
        changes["description"] = (changes["description"] or "").strip() or None

    current = {name: getattr(coupon, name) for name in _CouponFields.__dataclass_fields__}
    fields = _CouponFields(**{**current, **changes})
    fields.starts_at = as_utc(fields.starts_at)
    fields.ends_at = as_utc(fields.ends_at)

    if fields.scope != CouponScope.service_scoped:
        service_ids: set[UUID] = set()
    elif requested_services is not None:
        service_ids = set(requested_services)
    else:
        service_ids = coupon.service_ids

    _validate_fields(fields, service_ids=service_ids)
    if fields.code != coupon.code:
        await _ensure_code_available(session, tenant_id=tenant_id, code=fields.code, exclude_id=coupon.id)
    await _ensure_services_exist(service_ids - coupon.service_ids, catalog)

    for name, value in vars(fields).items():
        setattr(coupon, name, value)
    _replace_services(coupon, service_ids)
    session.add(coupon)
    await _commit_definition(session, code=fields.code)
    await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_id": str(coupon.id), "fields": sorted(changes)})
    return coupon


async def set_active(session: AsyncSession, coupon_id: UUID, active: bool, *, tenant_id: UUID) -> Coupon:
    coupon = await get_coupon(session, coupon_id, tenant_id=tenant_id)
    coupon.is_active = bool(active)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_active_changed", extra={"coupon_id": str(coupon.id), "is_active": coupon.is_active})
    return coupon


async def set_service_eligibility(
    session: AsyncSession,
    coupon_id: UUID,
    service_ids: Iterable[UUID],
    *,
    tenant_id: UUID,
    catalog: ServiceCatalog,
) -> Coupon:
    coupon = await get_coupon(session, coupon_id, tenant_id=tenant_id)
    wanted = set(service_ids)
    if coupon.scope != CouponScope.service_scoped:
        if wanted:
            raise ValidationError("Only service-scoped coupons can be limited to services")
        return coupon
    if not wanted:
        raise ValidationError("Select at least one service for a service-scoped coupon")
    await _ensure_services_exist(wanted, catalog)

    _replace_services(coupon, wanted)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    return coupon
