from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bookingcoupons.api.v1 import api_router
from bookingcoupons.core.config import settings
from bookingcoupons.core.logging_config import configure_logging
from bookingcoupons.db.session import SessionLocal, engine
from bookingcoupons.middleware import RequestLoggingMiddleware
from bookingcoupons.schemas.error import ErrorResponse
from bookingcoupons.services import reservation_sweeper
from bookingcoupons.services.collaborators import InMemoryServiceCatalog, InMemoryTenantDirectory
from bookingcoupons.services.coupon_service import CouponService
from bookingcoupons.services.errors import CouponError, TransientLedgerError
from bookingcoupons.services.redemption_ledger import RedemptionLedger


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reservation_sweeper.start(app, ledger=app.state.redemption_ledger, engine=engine)
    try:
        yield
    finally:
        await reservation_sweeper.stop(app)


def get_application() -> FastAPI:
    configure_logging(settings.log_json, settings.log_level)
    tags_metadata = [
        {"name": "coupons", "description": "Coupon definitions, pricing and redemptions"},
        {"name": "health", "description": "Liveness checks"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    ledger = RedemptionLedger(SessionLocal)
    app.state.service_catalog = InMemoryServiceCatalog(allow_any=True)
    app.state.tenant_directory = InMemoryTenantDirectory()
    app.state.redemption_ledger = ledger
    app.state.coupon_service = CouponService(SessionLocal, ledger=ledger, tenants=app.state.tenant_directory)

    @app.exception_handler(CouponError)
    async def coupon_error_handler(request: Request, exc: CouponError):
        headers = {"Retry-After": "1"} if isinstance(exc, TransientLedgerError) else None
        return _error_response(request, exc.status_code, exc.detail, exc.code, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, exc.detail, None, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(request, 422, jsonable_encoder(exc.errors()), "validation_error")

    return app


def _error_response(
    request: Request, status_code: int, detail: Any, code: str | None, *, headers: dict[str, str] | None = None
) -> JSONResponse:
    payload = ErrorResponse(detail=detail, code=code, request_id=getattr(request.state, "request_id", None))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()), headers=headers)


app = get_application()
