import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookingcoupons.db.base import Base


class CouponDiscountType(str, enum.Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"


class CouponScope(str, enum.Enum):
    store_wide = "store_wide"
    service_scoped = "service_scoped"


class RedemptionState(str, enum.Enum):
    reserved = "reserved"
    confirmed = "confirmed"
    released = "released"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_coupons_tenant_code"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[CouponDiscountType] = mapped_column(
        Enum(CouponDiscountType, native_enum=False),
        nullable=False,
        default=CouponDiscountType.percentage,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    min_order_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    scope: Mapped[CouponScope] = mapped_column(
        Enum(CouponScope, native_enum=False),
        nullable=False,
        default=CouponScope.store_wide,
    )
    total_usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    per_customer_usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    services: Mapped[list["CouponServiceEligibility"]] = relationship(
        "CouponServiceEligibility", back_populates="coupon", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def service_ids(self) -> set[uuid.UUID]:
        return {link.service_id for link in self.services or []}


class CouponServiceEligibility(Base):
    __tablename__ = "coupon_services"
    __table_args__ = (UniqueConstraint("coupon_id", "service_id", name="uq_coupon_services_coupon_service"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    coupon: Mapped[Coupon] = relationship("Coupon", back_populates="services")


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        Index("ix_coupon_redemptions_coupon_state", "coupon_id", "state"),
        Index("ix_coupon_redemptions_coupon_customer", "coupon_id", "customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("coupons.id"), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    amount_discounted: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    state: Mapped[RedemptionState] = mapped_column(
        Enum(RedemptionState, native_enum=False),
        nullable=False,
        default=RedemptionState.reserved,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    coupon: Mapped[Coupon] = relationship("Coupon")
