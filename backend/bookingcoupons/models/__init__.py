from bookingcoupons.db.base import Base  # noqa: F401
from bookingcoupons.models.coupons import (  # noqa: F401
    Coupon,
    CouponDiscountType,
    CouponRedemption,
    CouponScope,
    CouponServiceEligibility,
    RedemptionState,
)
