"""
M-Pesa STK Push callback (Daraja ``CallBackURL``).

Safaricom retries anything that is not acknowledged, so the handler
answers ``{"ResultCode": 0, "ResultDesc": "Accepted"}`` for every
authenticated delivery, including ones it cannot use, and applies the
payment after the response.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from bakery_orders.api.dependencies.webhook_auth import require_mpesa_webhook_auth
from bakery_orders.api.webhooks.processing import (
    check_webhook_rate_limit,
    get_alert_sender,
    parse_json_body,
    process_payment_event,
)
from bakery_orders.core.exceptions import MalformedPayloadError, RateLimitedError
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.db.database import get_session_factory
from bakery_orders.domain.services.payment_events import normalize_stk_callback

logger = get_logger(__name__)

router = APIRouter()

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post(
    "/callback",
    summary="STK Push callback",
    responses={
        200: {"description": "Callback acknowledged"},
        401: {"description": "Shared secret / signature mismatch"},
        429: {"description": "Too many callbacks from this IP"},
    },
)
async def stk_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(require_mpesa_webhook_auth),
    session_factory=Depends(get_session_factory),
    alert_sender=Depends(get_alert_sender),
) -> dict:
    decision = await check_webhook_rate_limit(request, "mpesa-callback")
    if not decision.allowed:
        raise RateLimitedError("Too many callbacks", decision.retry_after_ms)

    try:
        event = normalize_stk_callback(parse_json_body(raw_body))
    except (MalformedPayloadError, ValueError) as e:
        logger.warning("STK callback ignored: unusable payload", extra_data={"error": str(e)})
        return ACCEPTED
    except Exception as e:
        logger.error("STK callback parsing failed", extra_data={"error": str(e)}, exc_info=True)
        return ACCEPTED

    logger.info(
        "STK callback received",
        extra_data={
            "checkout_request_id": event.session_id,
            "result_code": event.result_code,
            "outcome": event.outcome.value,
        },
    )
    background_tasks.add_task(
        process_payment_event, session_factory, event, alert_sender, get_correlation_id()
    )
    return ACCEPTED
