"""
Tests for the Celery housekeeping tasks - bakery_orders/workers/tasks.py

Covers:
- reconciliation wrapper (fresh run, same-minute replay, in-progress skip)
- STK expiry and idempotency cleanup against the test database
- event loop handling for sync task entry points
- beat schedule wiring
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from bakery_orders.db.models.idempotency_record import IdempotencyRecord, IdempotencyStatus
from bakery_orders.db.models.order import PaymentPlan, PaymentStatus
from bakery_orders.domain.services.idempotency_service import IdempotentRun, RunState
from bakery_orders.workers import tasks
from bakery_orders.workers.celery_app import celery_app


@pytest.fixture
def task_session(db_session):
    """Points get_task_session at the test database session"""
    @asynccontextmanager
    async def _session():
        yield db_session

    with patch("bakery_orders.workers.tasks.get_task_session", _session):
        yield db_session


# ============================================================================
# Reconciliation
# ============================================================================

class TestReconcileTask:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_fresh_run(self, task_session):
        stats = {"success": True, "stats": {"scanned": 2}}
        with patch(
            "bakery_orders.workers.tasks.run_guarded_reconciliation",
            new=AsyncMock(return_value=IdempotentRun(RunState.FRESH, stats)),
        ) as guarded:
            result = await tasks._reconcile()

        assert result == {"deduped": False, "result": stats}
        assert guarded.await_args.args[0] is task_session
        assert callable(guarded.await_args.kwargs["alert_sender"])

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_replay_is_flagged(self, task_session):
        with patch(
            "bakery_orders.workers.tasks.run_guarded_reconciliation",
            new=AsyncMock(return_value=IdempotentRun(RunState.REPLAY, {"success": True})),
        ):
            result = await tasks._reconcile()

        assert result["deduped"] is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_in_progress_is_skipped(self, task_session):
        with patch(
            "bakery_orders.workers.tasks.run_guarded_reconciliation",
            new=AsyncMock(return_value=IdempotentRun(RunState.IN_PROGRESS)),
        ):
            result = await tasks._reconcile()

        assert result == {"skipped": True}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_end_to_end_with_daraja_mock(self, task_session, order_factory, mock_mpesa_client):
        order = await order_factory(
            total_amount=1800,
            payment_status=PaymentStatus.INITIATED,
            last_checkout_request_id="ws_CO_BEAT",
            last_request_amount=1800,
        )
        mock_mpesa_client.stk_query.return_value = {"ResultCode": "0", "ResultDesc": "Processed"}

        with patch(
            "bakery_orders.domain.services.reconciliation_service.get_mpesa_client",
            return_value=mock_mpesa_client,
        ):
            result = await tasks._reconcile()

        assert result["result"]["stats"]["advanced"] == 1
        await task_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID


# ============================================================================
# Expiry and cleanup
# ============================================================================

class TestHousekeepingTasks:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_expire_stale_initiations(self, task_session, order_factory):
        old = datetime.now(timezone.utc) - timedelta(hours=2)
        stale = await order_factory(payment_status=PaymentStatus.INITIATED, updated_at=old)
        deposit = await order_factory(
            payment_plan=PaymentPlan.DEPOSIT, payment_status=PaymentStatus.DEPOSIT_PAID, updated_at=old
        )

        result = await tasks._expire()

        assert result == {"expired": 1}
        await task_session.refresh(stale)
        await task_session.refresh(deposit)
        assert stale.payment_status == PaymentStatus.FAILED
        assert deposit.payment_status == PaymentStatus.DEPOSIT_PAID

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_cleanup_idempotency_records(self, task_session):
        now = datetime.now(timezone.utc)
        task_session.add_all([
            IdempotencyRecord(
                scope="order-submit:cake", key="old", status=IdempotencyStatus.COMPLETED,
                expires_at=now - timedelta(days=2),
            ),
            IdempotencyRecord(
                scope="order-submit:cake", key="live", status=IdempotencyStatus.COMPLETED,
                expires_at=now + timedelta(minutes=10),
            ),
        ])
        await task_session.commit()

        result = await tasks._cleanup(24)

        assert result == {"deleted": 1}
        remaining = (
            await task_session.execute(select(func.count()).select_from(IdempotencyRecord))
        ).scalar_one()
        assert remaining == 1


# ============================================================================
# Sync entry points
# ============================================================================

class TestTaskEntryPoints:

    @pytest.mark.unit
    def test_run_async_uses_fresh_loop(self):
        async def _answer():
            return 42

        with patch("bakery_orders.core.redis_client.close_redis", new=AsyncMock()) as close_redis:
            assert tasks.run_async(_answer()) == 42
        close_redis.assert_awaited_once()

    @pytest.mark.unit
    def test_tasks_delegate_to_run_async(self):
        run_async = MagicMock(return_value={"deleted": 0})
        with patch("bakery_orders.workers.tasks.run_async", run_async):
            assert tasks.cleanup_idempotency_records(hours=6) == {"deleted": 0}
            tasks.expire_stale_stk_initiations()
            tasks.reconcile_mpesa_payments()

        assert run_async.call_count == 3
        for call in run_async.call_args_list:
            call.args[0].close()

    @pytest.mark.unit
    def test_beat_schedule(self):
        schedule = celery_app.conf.beat_schedule
        tasks_by_name = {entry["task"]: entry["schedule"] for entry in schedule.values()}

        assert tasks_by_name["bakery_orders.workers.tasks.reconcile_mpesa_payments"] == 60.0
        assert tasks_by_name["bakery_orders.workers.tasks.expire_stale_stk_initiations"] == 300.0
        assert tasks_by_name["bakery_orders.workers.tasks.cleanup_idempotency_records"] == 86400.0
        assert tasks.reconcile_mpesa_payments.name in celery_app.tasks
