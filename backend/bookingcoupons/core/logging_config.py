from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
tenant_id_ctx_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_RECORD_KEYS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

# Third-party loggers that are too chatty at INFO for a request-heavy service.
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


class ContextFilter(logging.Filter):
    """Stamp the current request and tenant ids on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get() or "-"
        record.tenant_id = tenant_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool, str)):
        return value
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    # UUIDs, Decimals, enums and datetimes log as their string form.
    return str(value)


def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: _json_safe(value)
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_KEYS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, event and its fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in extra_fields(record).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class KeyValueFormatter(logging.Formatter):
    """Human-readable lines with the ``extra=`` fields appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in extra_fields(record).items() if k not in {"request_id", "tenant_id"}}
        if getattr(record, "tenant_id", "-") != "-":
            fields = {"tenant_id": record.tenant_id, **fields}
        if not fields:
            return line
        return line + " " + " ".join(f"{key}={value}" for key, value in fields.items())


def configure_logging(json_logs: bool = False, level: str = "INFO") -> None:
    """Configure the root logger with a context-aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if json_logs else KeyValueFormatter())

    logging.basicConfig(level=(level or "INFO").upper(), handlers=[handler], force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
