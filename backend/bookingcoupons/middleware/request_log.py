import logging
import re
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from bookingcoupons.core.logging_config import request_id_ctx_var, tenant_id_ctx_var

logger = logging.getLogger("bookingcoupons.request")

# Routing has not run yet, so the tenant is read straight from the path.
_TENANT_PATH_RE = re.compile(r"/tenants/([0-9a-fA-F-]{36})(?:/|$)")
_MAX_REQUEST_ID_LEN = 128


def _incoming_request_id(request: Request) -> str:
    candidate = (request.headers.get("X-Request-ID") or "").strip()
    if candidate and len(candidate) <= _MAX_REQUEST_ID_LEN:
        return candidate
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Propagate X-Request-ID, tag logs with the tenant and log one line per request."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request)
        match = _TENANT_PATH_RE.search(request.url.path)
        request_token = request_id_ctx_var.set(request_id)
        tenant_token = tenant_id_ctx_var.set(match.group(1).lower() if match else None)
        request.state.request_id = request_id
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            status_code = response.status_code if response is not None else 500
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            logger.log(
                logging.ERROR if status_code >= 500 else logging.INFO,
                "request",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            tenant_id_ctx_var.reset(tenant_token)
            request_id_ctx_var.reset(request_token)
