from fastapi import Request

from bookingcoupons.services.collaborators import ServiceCatalog
from bookingcoupons.services.coupon_service import CouponService


def get_service_catalog(request: Request) -> ServiceCatalog:
    return request.app.state.service_catalog


def get_coupon_service(request: Request) -> CouponService:
    return request.app.state.coupon_service
