"""
HTTP middleware and exception handlers.

- RequestContextMiddleware: binds the correlation id (client's
  X-Correlation-ID, Safaricom's X-Request-ID, or a new one) and logs each
  request with customer phone numbers masked
- SecurityHeadersMiddleware: nosniff always, HSTS outside DEBUG
- AppException handler renders ``{"error": {"code", "message", "details"}}``
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from bakery_orders.core.exceptions import AppException, ErrorCode, RateLimitedError
from bakery_orders.core.logging import (
    get_correlation_id,
    get_logger,
    mask_phone_numbers,
    set_correlation_id,
)

logger = get_logger(__name__)

_MAX_CORRELATION_ID_LENGTH = 64


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer"""
    for candidate in (
        request.headers.get("x-forwarded-for", "").split(",")[0],
        request.headers.get("x-real-ip", ""),
    ):
        if candidate.strip():
            return candidate.strip()
    return request.client.host if request.client else "unknown"


def _safe_path(request: Request) -> str:
    # order lookups take the phone number in the query string
    path = mask_phone_numbers(request.url.path)
    if request.url.query:
        path = f"{path}?{mask_phone_numbers(request.url.query)}"
    return path


class RequestContextMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID")
        correlation_id = set_correlation_id(incoming[:_MAX_CORRELATION_ID_LENGTH] if incoming else None)
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        path = _safe_path(request)
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"{request.method} {path} crashed",
                extra_data={"client_ip": get_client_ip(request)},
                exc_info=True,
            )
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"{request.method} {path} -> {response.status_code}",
            extra_data={
                "status_code": response.status_code,
                "elapsed_ms": elapsed_ms,
                "client_ip": get_client_ip(request),
            },
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """HSTS is skipped in DEBUG so plain-HTTP local development keeps working"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"{exc.error_code.value}: {exc.message}",
        extra_data={"details": exc.details, "path": _safe_path(request)},
    )
    headers = {"X-Correlation-ID": get_correlation_id()}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(max(1, -(-exc.retry_after_ms // 1000)))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled {type(exc).__name__}",
        extra_data={"error": str(exc), "path": _safe_path(request)},
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()},
    )


def setup_middleware(app: FastAPI) -> None:
    from bakery_orders.core.config import settings

    # last added runs first
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
