from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every error response; ``request_id`` matches the X-Request-ID header."""

    detail: Any
    code: str | None = None
    request_id: str | None = None
