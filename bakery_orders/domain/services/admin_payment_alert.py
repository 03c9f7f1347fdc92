"""
Admin Payment Alert - WhatsApp message to the shop owners when money lands.

Best-effort: sent after the ledger commit, failures are logged per
recipient and never raised back into payment processing.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import WhatsAppError
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.core.validation import PhoneNumberValidator
from bakery_orders.db.models.order import Order, PaymentStatus
from bakery_orders.domain.services.payment_events import PaymentEvent
from bakery_orders.domain.services.payment_ledger_service import source_label

logger = get_logger(__name__)

NAIROBI_TZ = ZoneInfo("Africa/Nairobi")
_GRAPH_API_BASE = "https://graph.facebook.com"
_SEND_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class PaymentAlert:
    order_id: str
    order_number: Optional[str]
    payment_status: PaymentStatus
    amount_received: int
    total_amount: int
    total_paid: int
    balance_due: int
    method: str
    transaction_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order, increment: int, event: PaymentEvent) -> "PaymentAlert":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            payment_status=PaymentStatus(order.payment_status),
            amount_received=increment,
            total_amount=order.total_amount or 0,
            total_paid=order.amount_paid or 0,
            balance_due=order.amount_due or 0,
            method=source_label(event.source),
            transaction_id=event.receipt or order.transaction_id,
            checkout_request_id=event.session_id,
            customer_name=order.customer_name,
            phone=order.phone,
            request_id=get_correlation_id(),
        )


def format_kes(value: int) -> str:
    return f"{max(int(value or 0), 0):,} KES"


def normalize_recipient(value: str) -> Optional[str]:
    digits = re.sub(r"\D", "", value or "")
    if not digits:
        return None
    if digits.startswith("254") and len(digits) == 12:
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return "254" + digits[1:]
    if len(digits) == 9 and digits.startswith("7"):
        return "254" + digits
    if 10 <= len(digits) <= 15:
        return digits
    return None


def get_recipients() -> list[str]:
    recipients: list[str] = []
    for raw in re.split(r"[;,]", settings.ADMIN_WHATSAPP_NUMBERS or ""):
        recipient = normalize_recipient(raw.strip())
        if recipient and recipient not in recipients:
            recipients.append(recipient)
    return recipients


def build_message(alert: PaymentAlert, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    reference = alert.order_number or alert.order_id
    stage = "Payment complete" if alert.payment_status == PaymentStatus.PAID else "Deposit paid"

    base_url = (settings.PUBLIC_BASE_URL or "").rstrip("/")
    admin_url = f"{base_url}/admin/order/{alert.order_id}" if base_url else ""
    status_url = (
        f"{base_url}/status?id={quote(alert.order_number)}" if base_url and alert.order_number else ""
    )

    lines = [
        f"{settings.ADMIN_ALERT_BRAND} Payment Alert",
        f"Order: {reference}",
        f"Stage: {stage}",
        f"Received: {format_kes(alert.amount_received)}",
        f"Paid: {format_kes(alert.total_paid)} / {format_kes(alert.total_amount)}",
        f"Balance: {format_kes(alert.balance_due)}",
        f"Method: {alert.method}",
        f"Txn: {alert.transaction_id or 'N/A'}",
        f"Checkout: {alert.checkout_request_id or 'N/A'}",
        f"Customer: {alert.customer_name or 'N/A'}",
        f"Phone: {alert.phone or 'N/A'}",
    ]
    if admin_url:
        lines.append(f"Admin: {admin_url}")
    if status_url:
        lines.append(f"Status: {status_url}")
    lines.append(f"Time (EAT): {now.astimezone(NAIROBI_TZ).strftime('%d %b %Y, %H:%M')}")
    lines.append(f"Req: {alert.request_id or 'N/A'}")
    return "\n".join(lines)


class AdminPaymentAlertService:
    """Sends payment alerts through the WhatsApp Cloud API"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(
            settings.WHATSAPP_CLOUD_API_TOKEN
            and settings.WHATSAPP_CLOUD_API_PHONE_ID
            and get_recipients()
        )

    async def _post(self, client: httpx.AsyncClient, recipient: str, message: str) -> None:
        endpoint = (
            f"{_GRAPH_API_BASE}/{settings.WHATSAPP_GRAPH_API_VERSION}/"
            f"{settings.WHATSAPP_CLOUD_API_PHONE_ID}/messages"
        )
        response = await client.post(
            endpoint,
            headers={"Authorization": f"Bearer {settings.WHATSAPP_CLOUD_API_TOKEN}"},
            json={
                "messaging_product": "whatsapp",
                "to": recipient,
                "type": "text",
                "text": {"body": message, "preview_url": False},
            },
        )
        if response.status_code >= 400:
            raise WhatsAppError(
                f"messages returned status {response.status_code}",
                details={"status_code": response.status_code, "response_text": response.text[:500]},
            )

    async def send(self, alert: PaymentAlert) -> int:
        """Returns how many recipients accepted the message"""
        if not settings.ENABLE_ADMIN_PAYMENT_ALERTS:
            return 0
        if not self.is_configured:
            logger.warning(
                "Admin payment alert transport not configured",
                extra_data={"order_id": alert.order_id},
            )
            return 0

        message = build_message(alert)
        delivered = 0
        client = self._client or httpx.AsyncClient(timeout=_SEND_TIMEOUT_SECONDS)
        try:
            for recipient in get_recipients():
                try:
                    await self._post(client, recipient, message)
                    delivered += 1
                except (WhatsAppError, httpx.HTTPError) as e:
                    logger.error(
                        "Admin payment alert failed for recipient",
                        extra_data={
                            "order_id": alert.order_id,
                            "recipient": PhoneNumberValidator.mask(recipient),
                            "error": str(e),
                        },
                    )
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(
            "Admin payment alert sent",
            extra_data={"order_id": alert.order_id, "delivered": delivered},
        )
        return delivered

    async def notify(self, order: Order, increment: int, event: PaymentEvent) -> None:
        """Alert sender hook for ``PaymentLedgerService``"""
        await self.send(PaymentAlert.from_order(order, increment, event))
