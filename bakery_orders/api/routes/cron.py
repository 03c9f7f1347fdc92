"""
Cron API Routes - scheduler entry points for reconciliation and expiry.

Both accept GET and POST because hosted schedulers differ in which one
they send.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.api.dependencies.staff_auth import require_cron_secret
from bakery_orders.api.webhooks.processing import get_alert_sender
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.db.database import get_db
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.domain.services.reconciliation_service import (
    expire_stale_initiations,
    run_guarded_reconciliation,
)

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.api_route("/payment-reconcile", methods=["GET", "POST"], summary="Reconcile pending M-Pesa payments")
async def payment_reconcile(
    batch: Optional[int] = Query(None),
    lookback_minutes: Optional[int] = Query(None, alias="lookbackMinutes"),
    db: AsyncSession = Depends(get_db),
    mpesa_client: MpesaDarajaClient = Depends(get_mpesa_client),
    alert_sender=Depends(get_alert_sender),
):
    request_id = get_correlation_id()
    run = await run_guarded_reconciliation(
        db,
        mpesa_client=mpesa_client,
        alert_sender=alert_sender,
        batch_size=batch,
        lookback_minutes=lookback_minutes,
    )

    if run.in_progress:
        return JSONResponse(
            status_code=202,
            content={
                "ok": True,
                "request_id": request_id,
                "skipped": True,
                "reason": "Reconcile run already in progress for this minute",
            },
        )

    return {
        "ok": True,
        "request_id": request_id,
        "deduped": run.is_replay,
        "result": run.result,
    }


@router.api_route("/payment-expiry", methods=["GET", "POST"], summary="Fail STK sessions that never resolved")
async def payment_expiry(
    older_than_minutes: Optional[int] = Query(None, ge=1, le=24 * 60),
    db: AsyncSession = Depends(get_db),
) -> dict:
    expired = await expire_stale_initiations(db, older_than_minutes)
    return {"ok": True, "request_id": get_correlation_id(), "expired": expired}
