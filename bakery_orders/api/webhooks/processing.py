"""
Plumbing shared by the payment webhook handlers.

Handlers acknowledge the provider first and apply the event in a
background task with its own database session; the request session is
closed by the time the task runs.
"""
import json
from typing import Any, Callable

from fastapi import Request

from bakery_orders.core.config import settings
from bakery_orders.core.logging import get_logger, set_correlation_id
from bakery_orders.core.middleware import get_client_ip
from bakery_orders.core.rate_limit import RateLimitDecision, get_rate_limiter
from bakery_orders.domain.services.admin_payment_alert import AdminPaymentAlertService
from bakery_orders.domain.services.payment_events import PaymentEvent
from bakery_orders.domain.services.payment_ledger_service import AlertSender, PaymentLedgerService

logger = get_logger(__name__)


def get_alert_sender() -> AlertSender:
    """Dependency: admin alert hook passed to the ledger"""
    return AdminPaymentAlertService().notify


async def check_webhook_rate_limit(request: Request, scope: str) -> RateLimitDecision:
    return await get_rate_limiter().check(
        f"{scope}:{get_client_ip(request)}",
        settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Empty body -> {}; anything but a JSON object raises ValueError"""
    if not raw_body or not raw_body.strip():
        return {}
    payload = json.loads(raw_body)
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return payload


async def process_payment_event(
    session_factory: Callable,
    event: PaymentEvent,
    alert_sender: AlertSender | None,
    correlation_id: str,
) -> None:
    """Background task: dedup and apply one event. Never raises."""
    set_correlation_id(correlation_id)
    try:
        async with session_factory() as db:
            result = await PaymentLedgerService(db, alert_sender=alert_sender).process_event(event)
        logger.info(
            "Payment event processed",
            extra_data={
                "source": event.source.value,
                "outcome": result.outcome,
                "order_id": result.order_id,
                "checkout_request_id": event.session_id,
                "receipt": event.receipt,
                "increment": result.increment,
            },
        )
    except Exception as e:
        # the attempt stays unprocessed; provider retry or reconciliation picks it up
        logger.error(
            "Payment event processing failed",
            extra_data={
                "source": event.source.value,
                "checkout_request_id": event.session_id,
                "receipt": event.receipt,
                "error": str(e),
            },
            exc_info=True,
        )
