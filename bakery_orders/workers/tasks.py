"""
Celery Tasks for payment housekeeping

Sync task wrappers around the async reconciliation, STK expiry and
idempotency cleanup. Each run gets its own event loop and database engine.
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

from bakery_orders.workers.celery_app import celery_app
from bakery_orders.db.database import get_task_session
from bakery_orders.domain.services.admin_payment_alert import AdminPaymentAlertService
from bakery_orders.domain.services.idempotency_service import purge_expired_records
from bakery_orders.domain.services.reconciliation_service import (
    expire_stale_initiations,
    run_guarded_reconciliation,
)
from bakery_orders.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; drop it before closing
            from bakery_orders.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _reconcile() -> dict:
    async with get_task_session() as db:
        run = await run_guarded_reconciliation(db, alert_sender=AdminPaymentAlertService().notify)

    if run.in_progress:
        logger.info("Reconciliation already running for this minute")
        return {"skipped": True}
    return {"deduped": run.is_replay, "result": run.result}


async def _expire() -> dict:
    async with get_task_session() as db:
        expired = await expire_stale_initiations(db)
    return {"expired": expired}


async def _cleanup(hours: int) -> dict:
    async with get_task_session() as db:
        deleted = await purge_expired_records(db, older_than=timedelta(hours=hours))
    logger.info(
        "Cleaned up expired idempotency records",
        extra_data={"deleted": deleted, "older_than_hours": hours},
    )
    return {"deleted": deleted}


@celery_app.task(name="bakery_orders.workers.tasks.reconcile_mpesa_payments")
def reconcile_mpesa_payments():
    """Poll Daraja for orders whose STK callback never settled them"""
    return run_async(_reconcile())


@celery_app.task(name="bakery_orders.workers.tasks.expire_stale_stk_initiations")
def expire_stale_stk_initiations():
    return run_async(_expire())


@celery_app.task(name="bakery_orders.workers.tasks.cleanup_idempotency_records")
def cleanup_idempotency_records(hours: int = 24):
    """Delete idempotency records that expired more than ``hours`` ago"""
    return run_async(_cleanup(hours))
