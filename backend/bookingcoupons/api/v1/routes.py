from fastapi import APIRouter

from bookingcoupons.api.v1 import coupons
from bookingcoupons.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(coupons.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
