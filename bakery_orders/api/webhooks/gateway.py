"""
Payment gateway (Lipana) webhook.

The gateway relays STK results for pushes it initiated. Payloads are
signed with GATEWAY_WEBHOOK_SECRET; a payload without a checkout id can
never be correlated and is refused with 400.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from bakery_orders.api.dependencies.webhook_auth import require_gateway_signature
from bakery_orders.api.webhooks.processing import (
    check_webhook_rate_limit,
    get_alert_sender,
    parse_json_body,
    process_payment_event,
)
from bakery_orders.core.exceptions import MalformedPayloadError, RateLimitedError
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.db.database import get_session_factory
from bakery_orders.domain.services.payment_events import normalize_gateway_webhook

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/gateway",
    summary="Payment gateway webhook",
    responses={
        200: {"description": "Webhook acknowledged"},
        400: {"description": "Missing checkout request id"},
        401: {"description": "Invalid signature"},
    },
)
async def gateway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(require_gateway_signature),
    session_factory=Depends(get_session_factory),
    alert_sender=Depends(get_alert_sender),
):
    decision = await check_webhook_rate_limit(request, "gateway-webhook")
    if not decision.allowed:
        raise RateLimitedError("Too many webhooks", decision.retry_after_ms)

    try:
        event = normalize_gateway_webhook(parse_json_body(raw_body))
    except (MalformedPayloadError, ValueError) as e:
        logger.warning("Gateway webhook refused", extra_data={"error": str(e)})
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})
    except Exception as e:
        logger.error("Gateway webhook parsing failed", extra_data={"error": str(e)}, exc_info=True)
        return {"received": True}

    logger.info(
        "Gateway webhook received",
        extra_data={"checkout_request_id": event.session_id, "outcome": event.outcome.value},
    )
    background_tasks.add_task(
        process_payment_event, session_factory, event, alert_sender, get_correlation_id()
    )
    return {"received": True}
