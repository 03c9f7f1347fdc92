"""
Integration tests for the payment webhook endpoints.

The ledger update runs as a background task; the ASGI transport finishes
it before the client call returns, so order state can be asserted right
after the request.
"""
import pytest
from unittest.mock import AsyncMock, patch

from bakery_orders.core.config import settings
from bakery_orders.core.rate_limit import RateLimitBackend, RateLimiter, set_rate_limiter
from bakery_orders.db.models.order import PaymentPlan, PaymentStatus

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


class _UnreachableBackend(RateLimitBackend):
    async def hit(self, key: str, window_ms: int) -> tuple[int, int]:
        raise ConnectionError("redis down")


@pytest.fixture
def limiter_store_down():
    set_rate_limiter(RateLimiter(_UnreachableBackend()))
    yield
    set_rate_limiter(None)


class TestStkCallbackEndpoint:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_success_callback_pays_order(self, test_client, db_session, order_factory, stk_payload, alert_sender):
        order = await order_factory(
            total_amount=3200,
            payment_status=PaymentStatus.INITIATED,
            last_checkout_request_id="ws_CO_HTTP",
            last_request_amount=3200,
        )

        resp = await test_client.post(
            "/api/mpesa/callback", json=stk_payload("ws_CO_HTTP", amount=3200, receipt="RKH0000001")
        )

        assert resp.status_code == 200
        assert resp.json() == ACCEPTED
        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID
        assert order.amount_paid == 3200
        alert_sender.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_redelivery_is_acknowledged_and_ignored(
        self, test_client, db_session, order_factory, stk_payload, alert_sender
    ):
        order = await order_factory(
            total_amount=2000,
            payment_plan=PaymentPlan.DEPOSIT,
            payment_status=PaymentStatus.INITIATED,
            last_checkout_request_id="ws_CO_TWICE",
            last_request_amount=1000,
        )
        payload = stk_payload("ws_CO_TWICE", amount=1000, receipt="RKW0000001")

        for _ in range(3):
            resp = await test_client.post("/api/mpesa/callback", json=payload)
            assert resp.json() == ACCEPTED

        await db_session.refresh(order)
        assert order.amount_paid == 1000
        assert order.payment_status == PaymentStatus.DEPOSIT_PAID
        assert alert_sender.await_count == 1

    @pytest.mark.asyncio
    @pytest.mark.integration
    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2, 3]",
        b'{"Body": {"stkCallback": {"ResultCode": 0}}}',
    ])
    async def test_unusable_payload_still_acknowledged(self, test_client, body):
        resp = await test_client.post(
            "/api/mpesa/callback", content=body, headers={"content-type": "application/json"}
        )
        assert resp.status_code == 200
        assert resp.json() == ACCEPTED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_processing_error_does_not_reach_provider(self, test_client, stk_payload):
        with patch(
            "bakery_orders.api.webhooks.processing.PaymentLedgerService.process_event",
            new=AsyncMock(side_effect=RuntimeError("db gone")),
        ):
            resp = await test_client.post("/api/mpesa/callback", json=stk_payload("ws_CO_ERR"))
        assert resp.status_code == 200
        assert resp.json() == ACCEPTED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_rate_limited(self, test_client, stk_payload):
        with patch.object(settings, "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 1):
            first = await test_client.post("/api/mpesa/callback", json=stk_payload("ws_CO_RL1"))
            second = await test_client.post("/api/mpesa/callback", json=stk_payload("ws_CO_RL2"))
        assert first.status_code == 200
        assert second.status_code == 429
        assert "Retry-After" in second.headers

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_limiter_outage_still_processes(
        self, test_client, db_session, order_factory, stk_payload, limiter_store_down
    ):
        order = await order_factory(
            total_amount=1500,
            payment_status=PaymentStatus.INITIATED,
            last_checkout_request_id="ws_CO_DOWN",
            last_request_amount=1500,
        )

        resp = await test_client.post(
            "/api/mpesa/callback", json=stk_payload("ws_CO_DOWN", amount=1500, receipt="RKD0000001")
        )

        assert resp.status_code == 200
        assert resp.json() == ACCEPTED
        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID


class TestC2BEndpoints:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_validation_known_order(self, test_client, order_factory):
        order = await order_factory()
        resp = await test_client.post(
            "/api/mpesa/c2b/validation", json={"BillRefNumber": order.order_number.lower(), "TransAmount": "4000"}
        )
        assert resp.json() == ACCEPTED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_validation_unknown_order(self, test_client):
        resp = await test_client.post("/api/mpesa/c2b/validation", json={"BillRefNumber": "C999999"})
        assert resp.json() == {"ResultCode": 1, "ResultDesc": "Invalid Account Reference"}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_validation_requires_reference(self, test_client):
        resp = await test_client.post("/api/mpesa/c2b/validation", json={"TransAmount": "10"})
        assert resp.json() == {"ResultCode": 1, "ResultDesc": "BillRefNumber is required"}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_validation_without_order_match(self, test_client):
        with patch.object(settings, "MPESA_C2B_REQUIRE_ORDER_MATCH", False):
            resp = await test_client.post("/api/mpesa/c2b/validation", json={"BillRefNumber": "ANYTHING"})
        assert resp.json() == ACCEPTED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_confirmation_credits_order(self, test_client, db_session, order_factory, c2b_payload):
        order = await order_factory(total_amount=1500)

        resp = await test_client.post(
            "/api/mpesa/c2b/confirmation", json=c2b_payload("RKQ0000001", order.order_number, 1500)
        )

        assert resp.json() == ACCEPTED
        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID
        assert order.transaction_id == "RKQ0000001"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_confirmation_on_paid_order_is_noop(self, test_client, db_session, order_factory, c2b_payload):
        order = await order_factory(
            total_amount=1500, payment_status=PaymentStatus.PAID, amount_paid=1500, transaction_id="RKQ0000002"
        )

        resp = await test_client.post(
            "/api/mpesa/c2b/confirmation", json=c2b_payload("RKQ0000003", order.order_number, 1500)
        )

        assert resp.json() == ACCEPTED
        await db_session.refresh(order)
        assert order.amount_paid == 1500
        assert order.transaction_id == "RKQ0000002"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_confirmation_requires_trans_id(self, test_client):
        resp = await test_client.post("/api/mpesa/c2b/confirmation", json={"BillRefNumber": "C000001"})
        assert resp.json() == {"ResultCode": 1, "ResultDesc": "TransID is required"}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_confirmation_rate_limited(self, test_client, c2b_payload):
        with patch.object(settings, "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 0):
            resp = await test_client.post("/api/mpesa/c2b/confirmation", json=c2b_payload("RKZ1", "C000001", 10))
        body = resp.json()
        assert resp.status_code == 200
        assert body["ResultCode"] == 1
        assert body["ResultDesc"].startswith("Rate limit exceeded")

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_confirmation_during_limiter_outage(
        self, test_client, db_session, order_factory, c2b_payload, limiter_store_down
    ):
        order = await order_factory(total_amount=700, payment_status=PaymentStatus.PENDING)

        resp = await test_client.post(
            "/api/mpesa/c2b/confirmation", json=c2b_payload("RKDOWN0001", order.order_number, 700)
        )

        assert resp.json() == ACCEPTED
        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID


class TestGatewayEndpoint:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_success_event(self, test_client, db_session, order_factory):
        order = await order_factory(
            total_amount=900, payment_status=PaymentStatus.INITIATED, last_checkout_request_id="ws_CO_GW"
        )

        resp = await test_client.post("/api/webhooks/gateway", json={
            "Type": "payment.success",
            "Data": {"checkout_request_id": "ws_CO_GW", "amount": 900, "transaction_reference": "RKGW000001"},
        })

        assert resp.status_code == 200
        assert resp.json() == {"received": True}
        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_missing_checkout_id_is_400(self, test_client):
        resp = await test_client.post("/api/webhooks/gateway", json={"Type": "payment.success", "Data": {}})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid payload"}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_failed_event_marks_order(self, test_client, db_session, order_factory):
        order = await order_factory(payment_status=PaymentStatus.INITIATED, last_checkout_request_id="ws_CO_GWF")

        await test_client.post("/api/webhooks/gateway", json={
            "event": "payment.failed",
            "data": {"checkoutRequestId": "ws_CO_GWF", "ResultCode": 1032},
        })

        await db_session.refresh(order)
        assert order.payment_status == PaymentStatus.FAILED
