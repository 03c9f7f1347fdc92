"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- API test client with dependency overrides
- Mock external services (Daraja, WhatsApp alerts)
- Test data factories
"""
import os
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from bakery_orders.api.webhooks.processing import get_alert_sender
from bakery_orders.core.rate_limit import InMemoryRateLimitBackend, RateLimiter, set_rate_limiter
from bakery_orders.db.database import Base, get_db, get_session_factory
from bakery_orders.db.models.order import (
    Fulfilment,
    Order,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentPlan,
    PaymentStatus,
)
from bakery_orders.db.models.payment_ledger import LedgerEntryStatus, PaymentLedgerEntry
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Mock External Services
# ============================================================================

@pytest.fixture
def mock_mpesa_client():
    """Daraja client whose HTTP methods are AsyncMocks"""
    client = AsyncMock(spec=MpesaDarajaClient)
    client.stk_push.return_value = {
        "MerchantRequestID": "MR-1",
        "CheckoutRequestID": "ws_CO_TEST_1",
        "ResponseCode": "0",
        "CustomerMessage": "Success. Request accepted for processing",
    }
    client.stk_query.return_value = {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
    client.register_c2b_urls.return_value = {"ResponseCode": "0", "ResponseDescription": "Success"}
    return client


@pytest.fixture
def alert_sender():
    """Captures admin payment alerts instead of calling WhatsApp"""
    return AsyncMock()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, mock_mpesa_client, alert_sender):
    """Create test client with database, Daraja and alert overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    @asynccontextmanager
    async def _session_scope():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: _session_scope
    app.dependency_overrides[get_mpesa_client] = lambda: mock_mpesa_client
    app.dependency_overrides[get_alert_sender] = lambda: alert_sender

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Rate Limiter / Redis
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_rate_limiter():
    """Every test starts with empty in-memory windows"""
    limiter = RateLimiter(InMemoryRateLimitBackend())
    set_rate_limiter(limiter)
    yield limiter
    set_rate_limiter(None)


class FakeRedis:
    """In-memory Redis stand-in for the commands the rate limiter uses, with TTL tracking."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls_ms: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def incr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def pexpire(self, key: str, ttl_ms: int) -> None:
        if key in self._store:
            self._ttls_ms[key] = ttl_ms

    async def pttl(self, key: str) -> int:
        if key not in self._store:
            return -2
        return self._ttls_ms.get(key, -1)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls_ms.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls_ms.clear()


@pytest.fixture
def fake_redis():
    """Replaces get_redis for the Redis rate-limit backend"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("bakery_orders.core.rate_limit.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

_order_counter = 0


def _next_order_number(prefix: str) -> str:
    global _order_counter
    _order_counter += 1
    return f"{prefix}{_order_counter:06d}"[:7]


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating test orders"""
    async def _create_order(
        total_amount: int = 4000,
        payment_plan: PaymentPlan = PaymentPlan.FULL,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.MPESA,
        status: OrderStatus = OrderStatus.ORDER_RECEIVED,
        amount_paid: int = 0,
        deposit_amount: int | None = None,
        last_checkout_request_id: str | None = None,
        last_request_amount: int | None = None,
        transaction_id: str | None = None,
        phone: str = "0712345678",
        order_type: OrderType = OrderType.CAKE,
        fulfilment: Fulfilment = Fulfilment.DELIVERY,
        order_number: str | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> Order:
        if deposit_amount is None:
            deposit_amount = total_amount // 2 if payment_plan == PaymentPlan.DEPOSIT else 0
        now = datetime.now(timezone.utc)
        order = Order(
            order_number=order_number or _next_order_number("C" if order_type == OrderType.CAKE else "P"),
            order_type=order_type,
            fulfilment=fulfilment,
            status=status,
            customer_name="Wanjiku Test",
            phone=phone,
            mpesa_phone=phone,
            payment_method=payment_method,
            payment_status=payment_status,
            payment_plan=payment_plan,
            total_amount=total_amount,
            amount_paid=amount_paid,
            amount_due=max(total_amount - amount_paid, 0),
            deposit_amount=deposit_amount,
            last_checkout_request_id=last_checkout_request_id,
            last_request_amount=last_request_amount,
            transaction_id=transaction_id,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def ledger_entry_factory(db_session: AsyncSession):
    """Factory for ledger rows recorded at STK initiation"""
    async def _create_entry(
        order_id: str,
        checkout_request_id: str,
        amount: int | None = None,
        status: LedgerEntryStatus = LedgerEntryStatus.INITIATED,
    ) -> PaymentLedgerEntry:
        entry = PaymentLedgerEntry(
            order_id=order_id,
            checkout_request_id=checkout_request_id,
            amount=amount,
            status=status,
        )
        db_session.add(entry)
        await db_session.commit()
        return entry

    return _create_entry


# ============================================================================
# Provider payloads
# ============================================================================

def stk_callback_payload(
    checkout_request_id: str,
    result_code: int = 0,
    amount: int | None = None,
    receipt: str | None = None,
    phone: str = "254712345678",
    result_desc: str | None = None,
) -> dict:
    """Daraja STK callback body"""
    callback: dict = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items = [{"Name": "PhoneNumber", "Value": int(phone)}]
        if amount is not None:
            items.append({"Name": "Amount", "Value": amount})
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


def c2b_confirmation_payload(trans_id: str, bill_ref: str, amount: int, msisdn: str = "254712345678") -> dict:
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20261019101500",
        "TransAmount": str(amount),
        "BusinessShortCode": "600000",
        "BillRefNumber": bill_ref,
        "MSISDN": msisdn,
        "FirstName": "Wanjiku",
    }


@pytest.fixture
def stk_payload():
    return stk_callback_payload


@pytest.fixture
def c2b_payload():
    return c2b_confirmation_payload
