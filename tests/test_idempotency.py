"""
Tests for the idempotency record store
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from bakery_orders.core.exceptions import ErrorCode, IdempotencyKeyReusedError
from bakery_orders.db.models.idempotency_record import IdempotencyRecord, IdempotencyStatus
from bakery_orders.domain.services.idempotency_service import (
    MAX_KEY_LENGTH,
    RunState,
    normalize_idempotency_key,
    purge_expired_records,
    request_fingerprint,
    run_idempotent,
)


class _Counter:
    def __init__(self, result=None, error=None):
        self.calls = 0
        self.result = result if result is not None else {"success": True, "order_id": "abc"}
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.result, call=self.calls)


async def _record(db_session, scope, key):
    result = await db_session.execute(
        select(IdempotencyRecord)
        .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class TestRunIdempotent:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_second_call_replays(self, db_session):
        operation = _Counter()

        first = await run_idempotent(db_session, "order:cake", "key-1", operation)
        second = await run_idempotent(db_session, "order:cake", "key-1", operation)

        assert first.state == RunState.FRESH
        assert second.is_replay
        assert second.result == first.result
        assert operation.calls == 1

        record = await _record(db_session, "order:cake", "key-1")
        assert record.status == IdempotencyStatus.COMPLETED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_scopes_are_independent(self, db_session):
        operation = _Counter()

        await run_idempotent(db_session, "order:cake", "shared", operation)
        other = await run_idempotent(db_session, "order:pizza", "shared", operation)

        assert other.state == RunState.FRESH
        assert operation.calls == 2

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_running_record_reports_in_progress(self, db_session):
        now = datetime.now(timezone.utc)
        db_session.add(IdempotencyRecord(
            scope="order:cake",
            key="busy",
            status=IdempotencyStatus.PROCESSING,
            expires_at=now + timedelta(minutes=5),
        ))
        await db_session.commit()
        operation = _Counter()

        run = await run_idempotent(db_session, "order:cake", "busy", operation)

        assert run.in_progress
        assert run.result is None
        assert operation.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_expired_record_is_replaced(self, db_session):
        db_session.add(IdempotencyRecord(
            scope="order:cake",
            key="stale",
            status=IdempotencyStatus.COMPLETED,
            response_json={"success": True, "old": True},
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        ))
        await db_session.commit()
        operation = _Counter()

        run = await run_idempotent(db_session, "order:cake", "stale", operation)

        assert run.state == RunState.FRESH
        assert "old" not in run.result
        assert operation.calls == 1

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_business_failure_is_stored_and_replayed(self, db_session):
        operation = _Counter(result={"success": False, "error": "Store is busy"})

        await run_idempotent(db_session, "order:cake", "busy-store", operation)
        replay = await run_idempotent(db_session, "order:cake", "busy-store", operation)

        assert replay.is_replay
        assert replay.result["error"] == "Store is busy"
        record = await _record(db_session, "order:cake", "busy-store")
        assert record.status == IdempotencyStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_exception_allows_retry(self, db_session):
        failing = _Counter(error=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await run_idempotent(db_session, "order:cake", "boom", failing)

        operation = _Counter()
        retry = await run_idempotent(db_session, "order:cake", "boom", operation)

        assert retry.state == RunState.FRESH
        assert operation.calls == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_key_always_runs(self, db_session):
        operation = _Counter()

        await run_idempotent(db_session, "order:cake", None, operation)
        await run_idempotent(db_session, "order:cake", "   ", operation)

        assert operation.calls == 2

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_same_payload_replays(self, db_session):
        operation = _Counter()
        fingerprint = request_fingerprint({"phone": "0712345678", "cake_size": "1kg"})

        await run_idempotent(db_session, "order:cake", "same-body", operation, request_hash=fingerprint)
        replay = await run_idempotent(db_session, "order:cake", "same-body", operation, request_hash=fingerprint)

        assert replay.is_replay
        assert operation.calls == 1
        record = await _record(db_session, "order:cake", "same-body")
        assert record.request_hash == fingerprint

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_key_reused_with_different_payload(self, db_session):
        operation = _Counter()

        await run_idempotent(
            db_session, "order:cake", "reused", operation,
            request_hash=request_fingerprint({"cake_size": "1kg"}),
        )
        with pytest.raises(IdempotencyKeyReusedError) as exc_info:
            await run_idempotent(
                db_session, "order:cake", "reused", operation,
                request_hash=request_fingerprint({"cake_size": "2kg"}),
            )

        assert exc_info.value.error_code == ErrorCode.IDEMPOTENCY_KEY_REUSED
        assert operation.calls == 1

    @pytest.mark.unit
    def test_fingerprint_ignores_key_order(self):
        assert request_fingerprint({"a": 1, "b": [1, 2]}) == request_fingerprint({"b": [1, 2], "a": 1})
        assert request_fingerprint({"a": 1}) != request_fingerprint({"a": 2})


class TestKeyNormalization:

    @pytest.mark.unit
    def test_trims_and_caps(self):
        assert normalize_idempotency_key("  abc  ") == "abc"
        assert len(normalize_idempotency_key("x" * 500)) == MAX_KEY_LENGTH
        assert normalize_idempotency_key("") is None
        assert normalize_idempotency_key(None) is None


class TestPurge:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_purges_only_long_expired(self, db_session):
        now = datetime.now(timezone.utc)
        db_session.add_all([
            IdempotencyRecord(scope="s", key="old", expires_at=now - timedelta(hours=30)),
            IdempotencyRecord(scope="s", key="recent", expires_at=now - timedelta(hours=2)),
            IdempotencyRecord(scope="s", key="live", expires_at=now + timedelta(hours=1)),
        ])
        await db_session.commit()

        deleted = await purge_expired_records(db_session, older_than=timedelta(hours=24))

        assert deleted == 1
        assert await _record(db_session, "s", "old") is None
        assert await _record(db_session, "s", "recent") is not None
