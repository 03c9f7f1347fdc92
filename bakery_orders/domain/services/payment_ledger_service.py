"""
Payment Ledger Service - applies normalized payment events to orders.

Every channel (STK callback, C2B confirmation, gateway webhook, status
query) ends up here. The operation:

1. Claims the delivery in ``payment_attempts`` (unique by checkout id and by
   receipt). A processed row means the delivery is a duplicate.
2. Resolves the order: current checkout id, then the ledger entry for the
   session, then the bill reference (order number or id).
3. Applies the outcome through a single conditional UPDATE guarded by the
   observed ``amount_paid``, ``payment_status <> 'paid'`` and
   ``transaction_id IS DISTINCT FROM receipt``.
4. Upserts the ledger entry and marks the attempt processed in the same
   commit. A crash before the commit leaves the attempt unprocessed, so
   the provider's retry or the reconciliation job applies it later.
5. Fires the admin alert after the commit, only when money was credited.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.logging import get_logger
from bakery_orders.core.validation import PhoneNumberValidator
from bakery_orders.db.models.order import Order, PaymentPlan, PaymentStatus
from bakery_orders.db.models.payment_attempt import PaymentAttempt, PaymentSource
from bakery_orders.db.models.payment_ledger import LedgerEntryStatus, PaymentLedgerEntry
from bakery_orders.domain.services.payment_events import EventOutcome, PaymentEvent
from bakery_orders.state_machine import can_transition_payment

logger = get_logger(__name__)

AlertSender = Callable[[Order, int, PaymentEvent], Awaitable[None]]

# conditional update retries when another writer moved amount_paid under us
MAX_APPLY_ATTEMPTS = 3

_FAILABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.INITIATED)


class LedgerOutcome:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ALREADY_PAID = "already_paid"
    IGNORED = "ignored"
    MARKED_FAILED = "marked_failed"
    PENDING = "pending"
    ORDER_NOT_FOUND = "order_not_found"


@dataclass
class LedgerResult:
    outcome: str
    order_id: Optional[str] = None
    increment: int = 0
    payment_status: Optional[PaymentStatus] = None

    @property
    def advanced(self) -> bool:
        return self.outcome == LedgerOutcome.APPLIED and self.increment > 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ledger_key_for(event: PaymentEvent) -> Optional[str]:
    """Ledger rows are keyed by checkout session; C2B has none, so the receipt stands in"""
    if event.session_id:
        return event.session_id
    if event.receipt:
        return f"C2B:{event.receipt}"
    return None


async def find_order_by_bill_reference(db: AsyncSession, reference: Optional[str]) -> Optional[Order]:
    """Paybill account number is the order number (any case) or the order id"""
    reference = (reference or "").strip()
    if not reference:
        return None
    result = await db.execute(
        select(Order)
        .where(or_(Order.order_number == reference.upper(), Order.id == reference.lower()))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


def compute_increment(order: Order, event_amount: Optional[int], ledger_amount: Optional[int]) -> int:
    """
    Amount to credit for a success event, capped to what is still owed.

    Preference: the amount the provider reports, then what we recorded for
    the session, then the outstanding push amount, then the plan default.
    """
    total = order.total_amount or 0
    paid = order.amount_paid or 0
    remaining = max(total - paid, 0)

    if event_amount and event_amount > 0:
        increment = event_amount
    elif ledger_amount and ledger_amount > 0:
        increment = ledger_amount
    elif order.last_request_amount and order.last_request_amount > 0:
        increment = order.last_request_amount
    elif PaymentPlan(order.payment_plan) == PaymentPlan.DEPOSIT and paid <= 0:
        increment = order.deposit_amount or remaining
    else:
        increment = remaining

    return max(min(increment, remaining), 0)


def next_payment_position(total: int, paid: int, increment: int) -> tuple[int, int, PaymentStatus]:
    next_paid = min(total, paid + increment)
    next_due = max(total - next_paid, 0)
    next_status = PaymentStatus.PAID if next_paid >= total else PaymentStatus.DEPOSIT_PAID
    return next_paid, next_due, next_status


class PaymentLedgerService:
    """Dedup + ledger update for provider payment events"""

    def __init__(self, db: AsyncSession, alert_sender: Optional[AlertSender] = None):
        self.db = db
        self.alert_sender = alert_sender

    # ==================== Entry points ====================

    async def process_event(self, event: PaymentEvent) -> LedgerResult:
        """Webhook path: claim the delivery, then apply it"""
        attempt, duplicate = await self._claim_attempt(event)
        if duplicate:
            logger.info(
                "Duplicate payment delivery ignored",
                extra_data={
                    "source": event.source.value,
                    "checkout_request_id": event.session_id,
                    "receipt": event.receipt,
                },
            )
            return LedgerResult(LedgerOutcome.DUPLICATE, order_id=attempt.order_id if attempt else None)

        return await self.apply_event(event, attempt)

    async def record_status_query(self, event: PaymentEvent) -> Optional[PaymentAttempt]:
        """
        Reconciliation path: the attempt row for a status-query result.

        An unprocessed delivery for the session (a callback that crashed half
        way, or an earlier pending query) is reused so it gets settled. A
        processed one returns None; the order-level guards in the apply step
        still stop a double credit.
        """
        attempt, processed = await self._claim_attempt(event)
        if processed:
            return None
        if attempt is not None and attempt.source == PaymentSource.STATUS_QUERY.value:
            attempt.result_code = event.result_code
            attempt.result_desc = event.result_desc
            attempt.raw_payload = event.raw or None
        return attempt

    async def apply_event(
        self,
        event: PaymentEvent,
        attempt: Optional[PaymentAttempt] = None,
    ) -> LedgerResult:
        """Apply an event to its order and commit; marks ``attempt`` processed unless pending"""
        try:
            result, order = await self._apply(event, attempt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Ledger update failed, delivery left unprocessed",
                extra_data={"source": event.source.value, "checkout_request_id": event.session_id},
                exc_info=True,
            )
            raise

        if result.advanced and order is not None:
            await self._send_alert(order, result.increment, event)
        return result

    # ==================== Attempt dedup ====================

    async def _find_attempt(self, event: PaymentEvent) -> Optional[PaymentAttempt]:
        conditions = []
        if event.session_id:
            conditions.append(PaymentAttempt.checkout_request_id == event.session_id)
        if event.receipt:
            conditions.append(PaymentAttempt.mpesa_receipt == event.receipt)
        if not conditions:
            return None
        result = await self.db.execute(
            select(PaymentAttempt)
            .where(or_(*conditions))
            .order_by(PaymentAttempt.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _claim_attempt(self, event: PaymentEvent) -> tuple[Optional[PaymentAttempt], bool]:
        """Returns (attempt, is_duplicate)"""
        existing = await self._find_attempt(event)
        if existing is not None:
            return existing, existing.is_processed

        attempt = PaymentAttempt(
            source=event.source.value,
            checkout_request_id=event.session_id,
            merchant_request_id=event.merchant_request_id,
            mpesa_receipt=event.receipt,
            result_code=event.result_code,
            result_desc=event.result_desc,
            amount=event.amount,
            phone=event.phone,
            raw_payload=event.raw or None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(attempt)
            # durable before the order is touched
            await self.db.commit()
        except IntegrityError:
            # concurrent delivery of the same event won the insert
            existing = await self._find_attempt(event)
            if existing is None:
                raise
            return existing, existing.is_processed
        return attempt, False

    # ==================== Order resolution ====================

    async def _get_ledger_entry(self, key: Optional[str]) -> Optional[PaymentLedgerEntry]:
        if not key:
            return None
        result = await self.db.execute(
            select(PaymentLedgerEntry)
            .where(PaymentLedgerEntry.checkout_request_id == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_order(self, *conditions) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(*conditions).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def resolve_order(
        self,
        event: PaymentEvent,
        ledger_entry: Optional[PaymentLedgerEntry] = None,
    ) -> Optional[Order]:
        if event.session_id:
            order = await self._load_order(Order.last_checkout_request_id == event.session_id)
            if order is not None:
                return order

        if ledger_entry is not None:
            order = await self._load_order(Order.id == ledger_entry.order_id)
            if order is not None:
                return order

        return await find_order_by_bill_reference(self.db, event.bill_reference)

    # ==================== Apply ====================

    async def _apply(
        self,
        event: PaymentEvent,
        attempt: Optional[PaymentAttempt],
    ) -> tuple[LedgerResult, Optional[Order]]:
        ledger_entry = await self._get_ledger_entry(ledger_key_for(event))
        order = await self.resolve_order(event, ledger_entry)

        if order is None:
            logger.warning(
                "Payment event without a matching order",
                extra_data={
                    "source": event.source.value,
                    "checkout_request_id": event.session_id,
                    "bill_reference": event.bill_reference,
                },
            )
            self._mark_processed(attempt, None)
            return LedgerResult(LedgerOutcome.ORDER_NOT_FOUND), None

        if event.outcome == EventOutcome.SUCCESS:
            result = await self._apply_success(event, order, ledger_entry)
        elif event.outcome == EventOutcome.FAILED:
            result = await self._apply_failure(event, order, ledger_entry)
        else:
            result = await self._apply_pending(event, order)

        # pending deliveries stay claimable for the next poll
        if result.outcome != LedgerOutcome.PENDING:
            self._mark_processed(attempt, order.id)
        return result, order

    async def _apply_success(
        self,
        event: PaymentEvent,
        order: Order,
        ledger_entry: Optional[PaymentLedgerEntry],
    ) -> LedgerResult:
        receipt = event.receipt

        for _ in range(MAX_APPLY_ATTEMPTS):
            if receipt and order.transaction_id == receipt:
                return LedgerResult(LedgerOutcome.DUPLICATE, order.id, payment_status=PaymentStatus(order.payment_status))

            if PaymentStatus(order.payment_status) == PaymentStatus.PAID:
                logger.info(
                    "Payment received for an order already paid",
                    extra_data={"order_id": order.id, "source": event.source.value, "receipt": receipt},
                )
                return LedgerResult(LedgerOutcome.ALREADY_PAID, order.id, payment_status=PaymentStatus.PAID)

            if ledger_entry is not None and ledger_entry.status == LedgerEntryStatus.SUCCESS:
                return LedgerResult(LedgerOutcome.DUPLICATE, order.id, payment_status=PaymentStatus(order.payment_status))

            observed_paid = order.amount_paid or 0
            increment = compute_increment(
                order, event.amount, ledger_entry.amount if ledger_entry is not None else None
            )
            if increment <= 0:
                return LedgerResult(LedgerOutcome.IGNORED, order.id, payment_status=PaymentStatus(order.payment_status))

            next_paid, next_due, next_status = next_payment_position(order.total_amount, observed_paid, increment)
            if not can_transition_payment(order.payment_status, next_status):
                logger.warning(
                    "Payment transition rejected",
                    extra_data={
                        "order_id": order.id,
                        "current": PaymentStatus(order.payment_status).value,
                        "target": next_status.value,
                    },
                )
                return LedgerResult(LedgerOutcome.IGNORED, order.id, payment_status=PaymentStatus(order.payment_status))

            now = _utcnow()
            values = {
                "amount_paid": next_paid,
                "amount_due": next_due,
                "payment_status": next_status,
                "last_request_amount": None,
                "updated_at": now,
            }
            if receipt:
                values["transaction_id"] = receipt
            if event.phone:
                values["mpesa_phone"] = event.phone
            if next_status == PaymentStatus.PAID:
                values["paid_at"] = now

            conditions = [
                Order.id == order.id,
                Order.payment_status != PaymentStatus.PAID,
                Order.amount_paid == observed_paid,
            ]
            if receipt:
                conditions.append(Order.transaction_id.is_distinct_from(receipt))

            result = await self.db.execute(
                update(Order)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 1:
                self._upsert_ledger(event, order, ledger_entry, LedgerEntryStatus.SUCCESS, increment)
                logger.info(
                    "Payment applied",
                    extra_data={
                        "order_id": order.id,
                        "source": event.source.value,
                        "increment": increment,
                        "amount_paid": next_paid,
                        "payment_status": next_status.value,
                    },
                )
                return LedgerResult(LedgerOutcome.APPLIED, order.id, increment, next_status)

            # lost the race; re-read and decide again
            order = await self._load_order(Order.id == order.id)
            if order is None:
                return LedgerResult(LedgerOutcome.ORDER_NOT_FOUND), None

        logger.warning(
            "Payment update kept conflicting, leaving for reconciliation",
            extra_data={"order_id": order.id, "source": event.source.value},
        )
        return LedgerResult(LedgerOutcome.IGNORED, order.id, payment_status=PaymentStatus(order.payment_status))

    async def _apply_failure(
        self,
        event: PaymentEvent,
        order: Order,
        ledger_entry: Optional[PaymentLedgerEntry],
    ) -> LedgerResult:
        if ledger_entry is not None and ledger_entry.status == LedgerEntryStatus.SUCCESS:
            return LedgerResult(LedgerOutcome.DUPLICATE, order.id, payment_status=PaymentStatus(order.payment_status))

        is_current_session = bool(event.session_id) and order.last_checkout_request_id == event.session_id
        values: dict = {"updated_at": _utcnow()}
        if is_current_session:
            values["last_request_amount"] = None

        current = PaymentStatus(order.payment_status)
        if current in _FAILABLE_STATUSES and can_transition_payment(current, PaymentStatus.FAILED):
            result = await self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.payment_status.in_(_FAILABLE_STATUSES))
                .values(payment_status=PaymentStatus.FAILED, **values)
                .execution_options(synchronize_session="fetch")
            )
            marked = result.rowcount == 1
        else:
            if is_current_session:
                await self.db.execute(
                    update(Order)
                    .where(Order.id == order.id)
                    .values(**values)
                    .execution_options(synchronize_session="fetch")
                )
            marked = False

        self._upsert_ledger(event, order, ledger_entry, LedgerEntryStatus.FAILED, None)
        logger.info(
            "Payment failure recorded",
            extra_data={
                "order_id": order.id,
                "source": event.source.value,
                "result_code": event.result_code,
                "marked_failed": marked,
            },
        )
        outcome = LedgerOutcome.MARKED_FAILED if marked else LedgerOutcome.IGNORED
        return LedgerResult(outcome, order.id, payment_status=PaymentStatus(order.payment_status))

    async def _apply_pending(self, event: PaymentEvent, order: Order) -> LedgerResult:
        if (
            PaymentStatus(order.payment_status) == PaymentStatus.PENDING
            and event.session_id
            and order.last_checkout_request_id == event.session_id
        ):
            await self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
                .values(payment_status=PaymentStatus.INITIATED, updated_at=_utcnow())
                .execution_options(synchronize_session="fetch")
            )
        return LedgerResult(LedgerOutcome.PENDING, order.id, payment_status=PaymentStatus(order.payment_status))

    # ==================== Bookkeeping ====================

    def _mark_processed(self, attempt: Optional[PaymentAttempt], order_id: Optional[str]) -> None:
        if attempt is None:
            return
        attempt.processed_at = _utcnow()
        if order_id:
            attempt.order_id = order_id

    def _upsert_ledger(
        self,
        event: PaymentEvent,
        order: Order,
        ledger_entry: Optional[PaymentLedgerEntry],
        status: LedgerEntryStatus,
        amount: Optional[int],
    ) -> None:
        key = ledger_key_for(event)
        if key is None:
            return
        if ledger_entry is None:
            ledger_entry = PaymentLedgerEntry(order_id=order.id, checkout_request_id=key)
            self.db.add(ledger_entry)
        ledger_entry.status = status
        if amount is not None:
            ledger_entry.amount = amount
        if event.receipt:
            ledger_entry.mpesa_receipt = event.receipt
        if event.phone:
            ledger_entry.phone = event.phone
        ledger_entry.updated_at = _utcnow()

    async def _send_alert(self, order: Order, increment: int, event: PaymentEvent) -> None:
        if self.alert_sender is None:
            return
        try:
            await self.alert_sender(order, increment, event)
        except Exception as e:
            logger.warning(
                "Admin payment alert failed",
                extra_data={
                    "order_id": order.id,
                    "phone": PhoneNumberValidator.mask(order.phone or ""),
                    "error": str(e),
                },
            )


def source_label(source: PaymentSource | str) -> str:
    labels = {
        PaymentSource.STK_CALLBACK: "M-Pesa STK",
        PaymentSource.STATUS_QUERY: "M-Pesa STK",
        PaymentSource.C2B: "M-Pesa C2B",
        PaymentSource.GATEWAY: "M-Pesa Gateway",
    }
    return labels.get(PaymentSource(source), "M-Pesa")
