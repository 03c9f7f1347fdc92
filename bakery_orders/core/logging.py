"""
Structured logging for the order and payment flows.

Records are JSON lines in production and one readable line in development.
Each carries the correlation id of the HTTP request, provider webhook or
Celery run that produced it, so one order can be followed from checkout
through STK push, callback and reconciliation.

Safaricom payloads are full of customer MSISDNs; anything passed through
``extra_data`` has Kenyan phone numbers masked before it is written.
"""
import json
import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_service_name = "bakery-orders"

# 0712345678, 0112345678, 254712345678 and +254712345678
_KENYAN_PHONE_RE = re.compile(r"(?<!\d)(\+?254|0)([17]\d{2})\d{4}(\d{2})(?!\d)")


def mask_phone_numbers(text: str) -> str:
    """``0712345678`` -> ``0712****78``"""
    return _KENYAN_PHONE_RE.sub(r"\1\2****\3", text)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return mask_phone_numbers(value)
    if isinstance(value, dict):
        return {key: _scrub(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "service": _service_name,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.funcName}:{record.lineno}",
        }
        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Development format; extra_data is appended as compact JSON"""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get() or "-"
        line = super().format(record)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            line = f"{line} {json.dumps(extra_data, ensure_ascii=False, default=str)}"
        return line


class StructuredLogger(logging.Logger):
    """
    Logger accepting ``extra_data=`` on every level method:

        logger.info("Ledger applied", extra_data={"order_id": order.id})
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: dict[str, Any] | None = None):
        if extra_data:
            extra = dict(extra or {})
            extra["extra_data"] = _scrub(extra_data)
        super()._log(level, msg, args, exc_info=exc_info, extra=extra,
                     stack_info=stack_info, stacklevel=stacklevel + 1)


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "bakery-orders") -> None:
    """Install a single stdout handler on the root logger"""
    global _service_name
    _service_name = app_name

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # chatty libraries
    for name in ("httpx", "httpcore", "sqlalchemy.engine", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id to the current context, generating one if needed"""
    cid = correlation_id or uuid.uuid4().hex[:12]
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get() or set_correlation_id()


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log duration and outcome of a coroutine; failures are re-raised"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{operation_name} failed",
                    extra_data={
                        "operation": operation_name,
                        "elapsed_ms": int((time.monotonic() - started) * 1000),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise
            logger.info(
                f"{operation_name} finished",
                extra_data={
                    "operation": operation_name,
                    "elapsed_ms": int((time.monotonic() - started) * 1000),
                },
            )
            return result
        return wrapper
    return decorator
