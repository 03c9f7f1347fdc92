"""
Authentication of incoming payment webhooks.

Safaricom does not sign its callbacks, so the callback URL we register
carries a shared secret (header, bearer token or query param). When an
HMAC secret is configured the raw body must also carry a hex
HMAC-SHA256 signature. The payment gateway signs every webhook with its
own secret in ``X-Lipana-Signature``.

Usage:
    @router.post("/callback")
    async def stk_callback(
        ...,
        raw_body: bytes = Depends(require_mpesa_webhook_auth),
    ):
        ...
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from fastapi import Request

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import WebhookAuthenticationError
from bakery_orders.core.logging import get_logger
from bakery_orders.core.middleware import get_client_ip

logger = get_logger(__name__)

SHARED_SECRET_HEADERS = ("x-webhook-secret", "x-callback-secret", "x-register-secret")
SHARED_SECRET_QUERY_PARAMS = ("token", "secret", "webhook_secret")
SIGNATURE_HEADERS = ("x-mpesa-signature", "x-signature", "x-webhook-signature")
GATEWAY_SIGNATURE_HEADERS = ("x-lipana-signature", "signature")


@dataclass(frozen=True)
class WebhookVerifyResult:
    ok: bool
    reason: Optional[str] = None


def _safe_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


def _first_value(source: Mapping[str, str], names: Sequence[str]) -> Optional[str]:
    for name in names:
        value = (source.get(name) or "").strip()
        if value:
            return value
    return None


def extract_shared_secret(headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[str]:
    """Explicit header first, then ``Authorization: Bearer``, then the query string"""
    explicit = _first_value(headers, SHARED_SECRET_HEADERS)
    if explicit:
        return explicit

    auth = (headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token

    return _first_value(query_params, SHARED_SECRET_QUERY_PARAMS)


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_request(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    raw_body: bytes,
    shared_secret: Optional[str] = None,
    signature_secret: Optional[str] = None,
    require_signature: bool = False,
    fail_closed: bool = False,
    signature_headers: Sequence[str] = SIGNATURE_HEADERS,
) -> WebhookVerifyResult:
    """
    Check a webhook against whichever secrets are configured.

    Nothing configured passes unless ``fail_closed`` (production). When both
    secrets are configured both must match.
    """
    shared_secret = (shared_secret or "").strip()
    signature_secret = (signature_secret or "").strip()

    if not shared_secret and not signature_secret:
        if fail_closed:
            return WebhookVerifyResult(False, "Webhook auth misconfigured: no shared/HMAC secret configured")
        return WebhookVerifyResult(True)

    shared_ok = False
    if shared_secret:
        received = extract_shared_secret(headers, query_params)
        shared_ok = bool(received) and _safe_equal(received, shared_secret)

    signature_ok = False
    if signature_secret:
        received_signature = _first_value(headers, signature_headers)
        if received_signature:
            expected = compute_signature(signature_secret, raw_body)
            signature_ok = _safe_equal(received_signature.lower(), expected)

    if require_signature and not signature_secret:
        return WebhookVerifyResult(False, "Signature required but signature secret not configured")
    if signature_secret and not signature_ok:
        return WebhookVerifyResult(False, "Invalid HMAC signature")
    if shared_secret and not shared_ok:
        return WebhookVerifyResult(False, "Invalid shared secret")
    return WebhookVerifyResult(True)


def _fail_closed() -> bool:
    return settings.is_production and settings.WEBHOOK_FAIL_CLOSED_IN_PRODUCTION


def _reject(request: Request, result: WebhookVerifyResult) -> None:
    logger.warning(
        "Webhook rejected",
        extra_data={
            "path": request.url.path,
            "reason": result.reason,
            "client_ip": get_client_ip(request),
        },
    )
    raise WebhookAuthenticationError(result.reason or "Unauthorized")


async def require_mpesa_webhook_auth(request: Request) -> bytes:
    """
    Verify an STK callback or C2B webhook. Returns the raw body so the
    handler parses exactly the bytes that were signed.

    Raises ``WebhookAuthenticationError`` (401) on mismatch.
    """
    raw_body = await request.body()
    result = verify_webhook_request(
        headers=request.headers,
        query_params=request.query_params,
        raw_body=raw_body,
        shared_secret=settings.WEBHOOK_SHARED_SECRET,
        signature_secret=settings.WEBHOOK_HMAC_SECRET,
        require_signature=settings.WEBHOOK_REQUIRE_SIGNATURE,
        fail_closed=_fail_closed(),
    )
    if not result.ok:
        _reject(request, result)
    return raw_body


async def require_gateway_signature(request: Request) -> bytes:
    """Verify ``X-Lipana-Signature`` (or ``Signature``) with GATEWAY_WEBHOOK_SECRET"""
    raw_body = await request.body()
    result = verify_webhook_request(
        headers=request.headers,
        query_params={},
        raw_body=raw_body,
        signature_secret=settings.GATEWAY_WEBHOOK_SECRET,
        fail_closed=_fail_closed(),
        signature_headers=GATEWAY_SIGNATURE_HEADERS,
    )
    if not result.ok:
        _reject(request, result)
    return raw_body


async def require_register_secret(request: Request) -> None:
    """C2B URL registration is an operator action; open only in development without a secret"""
    expected = settings.MPESA_REGISTER_SECRET.strip()
    if not expected:
        if settings.is_production:
            _reject(request, WebhookVerifyResult(False, "MPESA_REGISTER_SECRET is not configured"))
        return

    received = extract_shared_secret(request.headers, request.query_params)
    if not received or not _safe_equal(received, expected):
        _reject(request, WebhookVerifyResult(False, "Invalid register secret"))
