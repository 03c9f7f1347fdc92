"""
Reconciliation Service - the safety net for lost payment callbacks.

Polls Daraja for recent orders still waiting on an STK session and feeds
the answer through the same ledger update the webhooks use, so a callback
that never arrived (or crashed half way) still settles the order.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.config import settings
from bakery_orders.core.logging import get_logger, log_async_operation
from bakery_orders.db.models.order import Order, PaymentStatus
from bakery_orders.domain.services.idempotency_service import IdempotentRun, run_idempotent
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.domain.services.payment_events import EventOutcome, classify_status_query
from bakery_orders.domain.services.payment_ledger_service import (
    AlertSender,
    LedgerOutcome,
    PaymentLedgerService,
)

logger = get_logger(__name__)

RECONCILABLE_STATUSES = (PaymentStatus.INITIATED, PaymentStatus.PENDING, PaymentStatus.DEPOSIT_PAID)
RECONCILE_SCOPE = "cron:mpesa-reconcile"
RECONCILE_BUCKET_TTL_SECONDS = 55


@dataclass
class ReconcileStats:
    scanned: int = 0
    queried: int = 0
    advanced: int = 0
    already_paid: int = 0
    marked_failed: int = 0
    pending: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def clamp(value: int, minimum: int, maximum: int) -> int:
    return min(max(int(value), minimum), maximum)


class Candidate(NamedTuple):
    order_id: str
    checkout_request_id: str
    payment_status: PaymentStatus
    last_request_amount: Optional[int]


class ReconciliationService:
    """Service for polling unresolved STK sessions"""

    def __init__(
        self,
        db: AsyncSession,
        mpesa_client: Optional[MpesaDarajaClient] = None,
        alert_sender: Optional[AlertSender] = None,
    ):
        self.db = db
        self.mpesa_client = mpesa_client or get_mpesa_client()
        self.ledger = PaymentLedgerService(db, alert_sender=alert_sender)

    async def _select_candidates(self, batch_size: int, lookback_minutes: int) -> list[Candidate]:
        """Column rows, not Orders; a rolled-back ledger update expires loaded instances"""
        since = datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes)
        result = await self.db.execute(
            select(
                Order.id,
                Order.last_checkout_request_id,
                Order.payment_status,
                Order.last_request_amount,
            )
            .where(
                Order.payment_status.in_(RECONCILABLE_STATUSES),
                Order.last_checkout_request_id.isnot(None),
                Order.created_at >= since,
            )
            .order_by(Order.created_at.asc())
            .limit(batch_size)
        )
        return [Candidate(*row) for row in result.all()]

    @log_async_operation("reconcile_payments")
    async def run(
        self,
        batch_size: Optional[int] = None,
        lookback_minutes: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Query Daraja for each candidate order and apply the outcome.

        A failing order is counted in ``errors`` and the batch continues.
        """
        batch_size = clamp(batch_size if batch_size is not None else settings.RECONCILE_BATCH_SIZE, 1, 100)
        lookback_minutes = clamp(
            lookback_minutes if lookback_minutes is not None else settings.RECONCILE_LOOKBACK_MINUTES,
            10,
            24 * 60,
        )

        stats = ReconcileStats()
        candidates = await self._select_candidates(batch_size, lookback_minutes)
        stats.scanned = len(candidates)

        for candidate in candidates:
            order_id, checkout_request_id = candidate.order_id, candidate.checkout_request_id

            try:
                # a settled deposit with no balance push in flight has nothing to ask about
                if (
                    PaymentStatus(candidate.payment_status) == PaymentStatus.DEPOSIT_PAID
                    and not (candidate.last_request_amount or 0) > 0
                ):
                    stats.skipped += 1
                    continue

                payload = await self.mpesa_client.stk_query(checkout_request_id)
                stats.queried += 1

                event = classify_status_query(checkout_request_id, payload)
                attempt = await self.ledger.record_status_query(event)
                result = await self.ledger.apply_event(event, attempt)
            except Exception as e:
                await self.db.rollback()
                stats.errors += 1
                logger.error(
                    "Reconciliation failed for order",
                    extra_data={
                        "order_id": order_id,
                        "checkout_request_id": checkout_request_id,
                        "error": str(e),
                    },
                )
                continue

            if result.outcome == LedgerOutcome.APPLIED:
                stats.advanced += 1
            elif result.outcome == LedgerOutcome.ALREADY_PAID:
                stats.already_paid += 1
            elif result.outcome == LedgerOutcome.MARKED_FAILED:
                stats.marked_failed += 1
            elif result.outcome == LedgerOutcome.PENDING or event.outcome == EventOutcome.PENDING:
                stats.pending += 1
            else:
                stats.skipped += 1

        logger.info(
            "Payment reconciliation finished",
            extra_data={"batch_size": batch_size, "lookback_minutes": lookback_minutes, **stats.to_dict()},
        )
        return {
            "success": True,
            "batch_size": batch_size,
            "lookback_minutes": lookback_minutes,
            "stats": stats.to_dict(),
        }


async def expire_stale_initiations(db: AsyncSession, older_than_minutes: Optional[int] = None) -> int:
    """
    Mark STK sessions that never resolved as failed so the customer can
    retry. Deposit orders are untouched; their deposit already landed.
    """
    minutes = older_than_minutes if older_than_minutes is not None else settings.STK_INITIATION_EXPIRY_MINUTES
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(minutes, 1))

    result = await db.execute(
        update(Order)
        .where(
            Order.payment_status == PaymentStatus.INITIATED,
            or_(
                Order.updated_at < cutoff,
                and_(Order.updated_at.is_(None), Order.created_at < cutoff),
            ),
        )
        .values(
            payment_status=PaymentStatus.FAILED,
            last_request_amount=None,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    count = result.rowcount or 0
    if count:
        logger.info("Expired stale STK initiations", extra_data={"count": count})
    return count


async def run_guarded_reconciliation(
    db: AsyncSession,
    mpesa_client: Optional[MpesaDarajaClient] = None,
    alert_sender: Optional[AlertSender] = None,
    batch_size: Optional[int] = None,
    lookback_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IdempotentRun:
    """
    One reconciliation per UTC minute across every trigger (beat, cron route,
    manual call). A second trigger in the same minute gets the stored stats
    back, or ``in_progress`` while the first is still running.
    """
    now = now or datetime.now(timezone.utc)
    bucket = int(now.timestamp() // 60)
    service = ReconciliationService(db, mpesa_client=mpesa_client, alert_sender=alert_sender)
    return await run_idempotent(
        db,
        scope=RECONCILE_SCOPE,
        key=f"bucket:{bucket}",
        operation=lambda: service.run(batch_size=batch_size, lookback_minutes=lookback_minutes),
        ttl_seconds=RECONCILE_BUCKET_TTL_SECONDS,
    )
