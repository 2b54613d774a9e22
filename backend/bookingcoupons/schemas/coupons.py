from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bookingcoupons.models.coupons import CouponDiscountType, CouponScope, RedemptionState


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    code: str
    name: str
    description: str | None = None
    discount_type: CouponDiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_order_value: Decimal | None = None
    scope: CouponScope
    service_ids: list[UUID] = Field(default_factory=list)
    total_usage_limit: int | None = None
    per_customer_usage_limit: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CouponCreate(BaseModel):
    code: str = Field(max_length=80)
    name: str = Field(max_length=120)
    description: str | None = None
    discount_type: CouponDiscountType = CouponDiscountType.percentage
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_order_value: Decimal | None = None
    scope: CouponScope = CouponScope.store_wide
    service_ids: list[UUID] = Field(default_factory=list)
    total_usage_limit: int | None = None
    per_customer_usage_limit: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool = True


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, max_length=80)
    name: str | None = Field(default=None, max_length=120)
    description: str | None = None
    discount_type: CouponDiscountType | None = None
    discount_value: Decimal | None = None
    max_discount_amount: Decimal | None = None
    min_order_value: Decimal | None = None
    scope: CouponScope | None = None
    service_ids: list[UUID] | None = None
    total_usage_limit: int | None = None
    per_customer_usage_limit: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool | None = None


class CouponActiveUpdate(BaseModel):
    is_active: bool


class CouponServicesUpdate(BaseModel):
    service_ids: list[UUID] = Field(default_factory=list)


class OrderLineItem(BaseModel):
    id: str = Field(min_length=1, max_length=120)
    service_id: UUID
    amount: Decimal = Field(ge=0)


class OrderQuote(BaseModel):
    line_items: list[OrderLineItem] = Field(default_factory=list)
    subtotal: Decimal | None = Field(default=None, ge=0)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=80)
    customer_id: str = Field(min_length=1, max_length=255)
    order: OrderQuote


class CouponPriceRead(BaseModel):
    coupon_id: UUID
    code: str
    discount_amount: Decimal
    eligible_subtotal: Decimal
    eligible_line_item_ids: list[str]


class ReservationCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=255)
    amount_discounted: Decimal = Field(default=Decimal("0.00"), ge=0)


class ReservationConfirm(BaseModel):
    booking_id: UUID
    amount_discounted: Decimal | None = Field(default=None, ge=0)


class ReservationRelease(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class ReservationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    tenant_id: UUID
    customer_id: str
    booking_id: UUID | None = None
    amount_discounted: Decimal
    state: RedemptionState
    created_at: datetime | None = None
    expires_at: datetime
    confirmed_at: datetime | None = None
    released_at: datetime | None = None
    release_reason: str | None = None


class CouponUsageRead(BaseModel):
    coupon_id: UUID
    confirmed: int
    reserved: int
    total_usage_limit: int | None = None
    remaining: int | None = None
    per_customer: dict[str, int] = Field(default_factory=dict)


class ReservationTokenRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    tenant_id: UUID
    customer_id: str
    expires_at: datetime
