"""
M-Pesa C2B (Paybill) webhooks.

- ``/validation``: Safaricom asks whether to accept a payment. The account
  number must be one of our orders unless MPESA_C2B_REQUIRE_ORDER_MATCH is off.
- ``/confirmation``: the money has moved; credit the order in the background.
- ``/register``: operator call that registers the two URLs with Daraja.
"""
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.api.dependencies.webhook_auth import (
    require_mpesa_webhook_auth,
    require_register_secret,
)
from bakery_orders.api.webhooks.processing import (
    check_webhook_rate_limit,
    get_alert_sender,
    parse_json_body,
    process_payment_event,
)
from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import (
    MalformedPayloadError,
    RateLimitedError,
    ValidationException,
)
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.core.middleware import get_client_ip
from bakery_orders.core.rate_limit import get_rate_limiter
from bakery_orders.db.database import get_db, get_session_factory
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.domain.services.payment_events import (
    normalize_bill_reference,
    normalize_c2b_confirmation,
)
from bakery_orders.domain.services.payment_ledger_service import find_order_by_bill_reference

logger = get_logger(__name__)

router = APIRouter()

REGISTER_WINDOW_SECONDS = 60 * 60


def c2b_response(result_code: int, result_desc: str) -> dict:
    return {"ResultCode": result_code, "ResultDesc": result_desc}


class C2BRegisterRequest(BaseModel):
    shortcode: Optional[str] = None
    confirmation_url: Optional[str] = None
    validation_url: Optional[str] = None
    response_type: Optional[Literal["Completed", "Cancelled"]] = None


@router.post("/validation", summary="C2B validation")
async def c2b_validation(
    request: Request,
    raw_body: bytes = Depends(require_mpesa_webhook_auth),
    db: AsyncSession = Depends(get_db),
) -> dict:
    decision = await check_webhook_rate_limit(request, "mpesa-c2b-validation")
    if not decision.allowed:
        return c2b_response(1, f"Rate limit exceeded ({get_correlation_id()})")

    try:
        payload = parse_json_body(raw_body)
        bill_ref = normalize_bill_reference(payload.get("BillRefNumber") or payload.get("AccountReference"))
        if not bill_ref:
            return c2b_response(1, "BillRefNumber is required")

        if not settings.MPESA_C2B_REQUIRE_ORDER_MATCH:
            return c2b_response(0, "Accepted")

        order = await find_order_by_bill_reference(db, bill_ref)
        if order is None:
            logger.info("C2B validation rejected: unknown account", extra_data={"bill_ref": bill_ref})
            return c2b_response(1, "Invalid Account Reference")
        return c2b_response(0, "Accepted")
    except Exception as e:
        logger.error("C2B validation failed", extra_data={"error": str(e)}, exc_info=True)
        return c2b_response(1, "Validation failed")


@router.post("/confirmation", summary="C2B confirmation")
async def c2b_confirmation(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(require_mpesa_webhook_auth),
    session_factory=Depends(get_session_factory),
    alert_sender=Depends(get_alert_sender),
) -> dict:
    decision = await check_webhook_rate_limit(request, "mpesa-c2b-confirm")
    if not decision.allowed:
        return c2b_response(1, f"Rate limit exceeded ({get_correlation_id()})")

    try:
        event = normalize_c2b_confirmation(parse_json_body(raw_body))
    except MalformedPayloadError:
        return c2b_response(1, "TransID is required")
    except Exception as e:
        logger.error("C2B confirmation parsing failed", extra_data={"error": str(e)}, exc_info=True)
        return c2b_response(0, "Accepted")

    logger.info(
        "C2B confirmation received",
        extra_data={"receipt": event.receipt, "bill_ref": event.bill_reference, "amount": event.amount},
    )
    background_tasks.add_task(
        process_payment_event, session_factory, event, alert_sender, get_correlation_id()
    )
    return c2b_response(0, "Accepted")


@router.post("/register", summary="Register C2B URLs with Daraja")
async def c2b_register(
    request: Request,
    mpesa_client: MpesaDarajaClient = Depends(get_mpesa_client),
) -> dict:
    decision = await get_rate_limiter().check(
        f"c2b-register:{get_client_ip(request)}",
        settings.C2B_REGISTER_RATE_LIMIT_MAX,
        REGISTER_WINDOW_SECONDS,
    )
    if not decision.allowed:
        raise RateLimitedError("Too many register attempts", decision.retry_after_ms)

    await require_register_secret(request)

    try:
        body = C2BRegisterRequest(**parse_json_body(await request.body()))
    except ValueError:
        raise ValidationException("Invalid register payload")

    response = await mpesa_client.register_c2b_urls(
        shortcode=body.shortcode,
        confirmation_url=body.confirmation_url,
        validation_url=body.validation_url,
        response_type=body.response_type,
    )
    logger.info("C2B URLs registered", extra_data={"response": response})
    return {"ok": True, **response, "request_id": get_correlation_id()}
