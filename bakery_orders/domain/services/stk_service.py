"""
STK Push Service - starts M-Pesa prompts for existing orders.

Three customer-facing operations:
- ``initiate``: first push for an order (full amount or deposit), guarded
  by an idempotency key so a double-tap sends one prompt;
- ``initiate_balance``: push for the outstanding balance of a deposit order;
- ``get_payment_snapshot``: what the status page shows while waiting.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import OrderNotFoundError, PaymentProviderError
from bakery_orders.core.logging import get_logger
from bakery_orders.core.rate_limit import RateLimiter, get_rate_limiter
from bakery_orders.core.validation import PhoneNumberValidator
from bakery_orders.db.models.order import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentPlan,
    PaymentStatus,
)
from bakery_orders.db.models.payment_ledger import LedgerEntryStatus, PaymentLedgerEntry
from bakery_orders.domain.services.idempotency_service import run_idempotent
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.state_machine import can_transition_payment

logger = get_logger(__name__)

STK_IDEMPOTENCY_TTL_SECONDS = 180

INVALID_PHONE_MESSAGE = "Invalid phone number. Use 07XXXXXXXX or 01XXXXXXXX"


def amount_to_charge(order: Order) -> int:
    """Deposit for an unpaid deposit order, otherwise whatever is still owed"""
    total = order.total_amount or 0
    paid = order.amount_paid or 0
    remaining = max(total - paid, 0)
    if (
        PaymentPlan(order.payment_plan) == PaymentPlan.DEPOSIT
        and PaymentStatus(order.payment_status) != PaymentStatus.DEPOSIT_PAID
        and paid <= 0
    ):
        return min(order.deposit_amount or remaining, remaining)
    return remaining


class StkPushService:
    """Service for customer-initiated M-Pesa payments"""

    def __init__(
        self,
        db: AsyncSession,
        mpesa_client: Optional[MpesaDarajaClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.db = db
        self.mpesa_client = mpesa_client or get_mpesa_client()
        self.rate_limiter = rate_limiter or get_rate_limiter()

    async def _get_order(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record_initiated(self, order: Order, checkout_request_id: str, amount: int, phone: str) -> None:
        result = await self.db.execute(
            select(PaymentLedgerEntry).where(PaymentLedgerEntry.checkout_request_id == checkout_request_id)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            entry = PaymentLedgerEntry(order_id=order.id, checkout_request_id=checkout_request_id)
            self.db.add(entry)
        if entry.status != LedgerEntryStatus.SUCCESS:
            entry.status = LedgerEntryStatus.INITIATED
        entry.amount = amount
        entry.phone = phone

    # ==================== Initiate ====================

    async def initiate(
        self,
        order_id: str,
        phone: str,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send an STK prompt for ``order_id``.

        Returns ``{success, checkout_request_id?, merchant_request_id?,
        customer_message?, error?}``. Provider failures are returned as an
        error dict; the idempotency record is expired so the same key can
        retry.
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        async def _run() -> dict[str, Any]:
            return await self._initiate(order_id, phone, correlation_id)

        try:
            run = await run_idempotent(
                self.db,
                scope=f"payment-init:{order_id}",
                key=idempotency_key,
                operation=_run,
                ttl_seconds=STK_IDEMPOTENCY_TTL_SECONDS,
            )
        except PaymentProviderError as e:
            logger.error(
                "STK push failed",
                extra_data={"order_id": order_id, "correlation_id": correlation_id, "error": e.message},
            )
            return {"success": False, "error": "Failed to send the M-Pesa prompt. Please try again."}

        if run.in_progress:
            return {
                "success": False,
                "error": "A payment request for this order is already in progress. Please wait.",
            }
        return run.result

    async def _initiate(self, order_id: str, phone: str, correlation_id: str) -> dict[str, Any]:
        normalized_phone = PhoneNumberValidator.normalize(phone or "")
        if not PhoneNumberValidator.validate(normalized_phone):
            return {"success": False, "error": INVALID_PHONE_MESSAGE}

        decision = await self.rate_limiter.check(
            f"stk-init-phone:{normalized_phone}",
            settings.STK_RATE_LIMIT_MAX,
            settings.STK_RATE_LIMIT_WINDOW_SECONDS,
        )
        if not decision.allowed:
            return {
                "success": False,
                "error": "Too many STK attempts. Please wait before retrying.",
                "retry_after_ms": decision.retry_after_ms,
            }

        order = await self._get_order(order_id)
        if order is None:
            return {"success": False, "error": "Order not found"}

        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            return {"success": False, "error": "Cancelled orders cannot be paid."}
        if PaymentMethod(order.payment_method) != PaymentMethod.MPESA:
            return {"success": False, "error": "This order is not configured for M-Pesa payments."}

        current_status = PaymentStatus(order.payment_status)
        if (
            current_status == PaymentStatus.INITIATED
            and (order.last_request_amount or 0) > 0
            and order.last_checkout_request_id
        ):
            # prompt already on the customer's phone; do not stack another
            return {
                "success": True,
                "checkout_request_id": order.last_checkout_request_id,
                "customer_message": "Payment request already sent. Check your phone for the M-Pesa prompt.",
            }

        if current_status == PaymentStatus.PAID:
            return {"success": False, "error": "Order already paid"}

        amount = amount_to_charge(order)
        if amount <= 0:
            return {"success": False, "error": "No balance due"}

        next_status = (
            PaymentStatus.DEPOSIT_PAID if current_status == PaymentStatus.DEPOSIT_PAID else PaymentStatus.INITIATED
        )
        if not can_transition_payment(current_status, next_status):
            return {"success": False, "error": f"Payment cannot be started from {current_status.value}"}

        response = await self.mpesa_client.stk_push(order.order_number or order.id, normalized_phone, amount)
        checkout_request_id = response["CheckoutRequestID"]

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status == current_status)
            .values(
                payment_status=next_status,
                last_checkout_request_id=checkout_request_id,
                last_request_amount=amount,
                mpesa_phone=normalized_phone,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            # a callback settled the order while the prompt was being sent
            await self.db.rollback()
            logger.warning(
                "Order payment state moved during STK initiation",
                extra_data={"order_id": order.id, "checkout_request_id": checkout_request_id},
            )
            return {"success": False, "error": "Order payment state changed. Please refresh."}

        await self._record_initiated(order, checkout_request_id, amount, normalized_phone)
        await self.db.commit()

        logger.info(
            "STK push initiated",
            extra_data={
                "order_id": order.id,
                "checkout_request_id": checkout_request_id,
                "amount": amount,
                "phone": PhoneNumberValidator.mask(normalized_phone),
                "correlation_id": correlation_id,
            },
        )
        return {
            "success": True,
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": response.get("MerchantRequestID"),
            "customer_message": response.get("CustomerMessage"),
        }

    # ==================== Balance ====================

    async def initiate_balance(self, order_id: str, phone: str) -> dict[str, Any]:
        normalized_phone = PhoneNumberValidator.normalize(phone or "")
        if not PhoneNumberValidator.validate(normalized_phone):
            return {"success": False, "error": INVALID_PHONE_MESSAGE}

        order = await self._get_order((order_id or "").strip())
        if order is None:
            return {"success": False, "error": "Order not found"}
        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            return {"success": False, "error": "Cancelled orders cannot receive balance payments."}
        if PaymentMethod(order.payment_method) != PaymentMethod.MPESA:
            return {"success": False, "error": "This order is not configured for M-Pesa payments."}
        if PhoneNumberValidator.normalize(order.phone or "") != normalized_phone:
            return {"success": False, "error": "Phone number does not match this order."}
        if PaymentStatus(order.payment_status) == PaymentStatus.PAID or order.remaining_amount <= 0:
            return {"success": False, "error": "This order is already fully paid."}
        if PaymentStatus(order.payment_status) != PaymentStatus.DEPOSIT_PAID:
            return {"success": False, "error": "Balance payments open once the deposit is paid."}

        throttle = await self.rate_limiter.check(
            f"status-balance-stk:{order.id}", 1, settings.BALANCE_PUSH_COOLDOWN_SECONDS
        )
        if not throttle.allowed:
            return {
                "success": False,
                "error": "Please wait a few seconds before starting another payment request.",
                "retry_after_ms": throttle.retry_after_ms,
            }

        idempotency_key = f"status-balance:{order.id}:{uuid.uuid4()}"
        return await self.initiate(
            order.id, normalized_phone, idempotency_key=idempotency_key, correlation_id=idempotency_key
        )

    # ==================== Snapshot ====================

    async def get_payment_snapshot(self, order_ref: str, phone: Optional[str] = None) -> dict[str, Any]:
        """
        Payment position of an order for the status page.

        Lookups by the short order number need the customer's phone; a phone
        that does not match answers "not found" so numbers cannot be probed.
        """
        reference = (order_ref or "").strip()
        if not reference:
            raise OrderNotFoundError(order_ref)

        result = await self.db.execute(
            select(Order).where(or_(Order.id == reference, Order.order_number == reference.upper()))
        )
        order = result.scalars().first()
        if order is None:
            raise OrderNotFoundError(reference)

        by_number = order.id != reference
        normalized_phone = PhoneNumberValidator.normalize(phone) if phone and phone.strip() else None
        if by_number and not normalized_phone:
            raise OrderNotFoundError(reference)
        if normalized_phone and PhoneNumberValidator.normalize(order.phone or "") != normalized_phone:
            raise OrderNotFoundError(reference)

        latest = await self.db.execute(
            select(PaymentLedgerEntry)
            .where(PaymentLedgerEntry.order_id == order.id)
            .order_by(PaymentLedgerEntry.created_at.desc(), PaymentLedgerEntry.id.desc())
            .limit(1)
        )
        entry = latest.scalar_one_or_none()

        return {
            "success": True,
            "order": {
                "id": order.id,
                "order_number": order.order_number,
                "order_status": OrderStatus(order.status).value,
                "payment_status": PaymentStatus(order.payment_status).value,
                "payment_method": PaymentMethod(order.payment_method).value,
                "payment_plan": PaymentPlan(order.payment_plan).value,
                "total_amount": order.total_amount,
                "amount_paid": order.amount_paid or 0,
                "balance_due": order.remaining_amount,
                "transaction_id": order.transaction_id,
                "last_checkout_request_id": order.last_checkout_request_id,
            },
            "latest_payment": {
                "id": entry.id,
                "amount": entry.amount,
                "status": LedgerEntryStatus(entry.status).value,
                "checkout_request_id": entry.checkout_request_id,
                "transaction_id": entry.mpesa_receipt,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            } if entry is not None else None,
        }
