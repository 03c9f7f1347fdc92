"""
Idempotency Service - run a mutating operation at most once per key.

The caller supplies (scope, key). The first caller to insert the
``processing`` record runs the operation and stores its result; concurrent
or later callers with the same key get the stored result replayed, or an
"in progress" answer while the winner is still running.
"""
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import IdempotencyKeyReusedError
from bakery_orders.core.logging import get_logger
from bakery_orders.db.models.idempotency_record import IdempotencyRecord, IdempotencyStatus

logger = get_logger(__name__)

MAX_KEY_LENGTH = 120
MIN_TTL_SECONDS = 30
# an expired record blocking the insert is cleared and the insert retried once
_MAX_INSERT_ATTEMPTS = 2


class RunState:
    FRESH = "fresh"
    REPLAY = "replay"
    IN_PROGRESS = "in_progress"


@dataclass
class IdempotentRun:
    state: str
    result: dict[str, Any] | None = None

    @property
    def is_replay(self) -> bool:
        return self.state == RunState.REPLAY

    @property
    def in_progress(self) -> bool:
        return self.state == RunState.IN_PROGRESS


def normalize_idempotency_key(key: str | None) -> str | None:
    if not key:
        return None
    normalized = key.strip()[:MAX_KEY_LENGTH]
    return normalized or None


def request_fingerprint(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _try_insert(
    db: AsyncSession,
    scope: str,
    key: str,
    ttl_seconds: int,
    request_hash: str | None = None,
) -> bool:
    now = datetime.now(timezone.utc)
    try:
        async with db.begin_nested():
            db.add(IdempotencyRecord(
                scope=scope,
                key=key,
                status=IdempotencyStatus.PROCESSING,
                request_hash=request_hash,
                expires_at=now + timedelta(seconds=ttl_seconds),
                created_at=now,
            ))
        # committed before running so concurrent callers see the lock
        await db.commit()
        return True
    except IntegrityError:
        return False


async def _finish(
    db: AsyncSession,
    scope: str,
    key: str,
    status: str,
    response: dict[str, Any] | None,
    expire_now: bool = False,
) -> None:
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {"status": status, "response_json": response, "updated_at": now}
    if expire_now:
        values["expires_at"] = now
    await db.execute(
        update(IdempotencyRecord)
        .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
        .values(**values)
    )
    await db.commit()


async def run_idempotent(
    db: AsyncSession,
    scope: str,
    key: str | None,
    operation: Callable[[], Awaitable[dict[str, Any]]],
    ttl_seconds: int | None = None,
    request_hash: str | None = None,
) -> IdempotentRun:
    """
    Execute ``operation`` once per (scope, key).

    Without a key the operation always runs. A result dict with
    ``success: False`` is stored as ``failed`` and still replayed. If the
    operation raises, the record is marked failed and expired at once so a
    retry with the same key can run again, and the exception propagates.

    With ``request_hash``, a later call under the same key carrying a
    different hash raises ``IdempotencyKeyReusedError`` instead of replaying.
    """
    normalized_key = normalize_idempotency_key(key)
    if normalized_key is None:
        return IdempotentRun(RunState.FRESH, await operation())

    ttl = max(ttl_seconds if ttl_seconds is not None else settings.IDEMPOTENCY_TTL_SECONDS, MIN_TTL_SECONDS)

    acquired = False
    for _ in range(_MAX_INSERT_ATTEMPTS):
        if await _try_insert(db, scope, normalized_key, ttl, request_hash):
            acquired = True
            break

        result = await db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == normalized_key)
            .execution_options(populate_existing=True)
        )
        existing = result.scalar_one_or_none()
        if existing is None:
            # deleted between our insert and our read; try again
            continue

        if _as_utc(existing.expires_at) <= datetime.now(timezone.utc):
            logger.info(
                "Clearing expired idempotency record",
                extra_data={"scope": scope, "status": existing.status},
            )
            await db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.id == existing.id,
                    IdempotencyRecord.expires_at <= datetime.now(timezone.utc),
                )
            )
            await db.commit()
            continue

        if request_hash and existing.request_hash and existing.request_hash != request_hash:
            logger.warning(
                "Idempotency key reused with a different payload",
                extra_data={"scope": scope},
            )
            raise IdempotencyKeyReusedError(scope)

        if existing.response_json is not None:
            logger.info(
                "Replaying stored idempotent response",
                extra_data={"scope": scope, "status": existing.status},
            )
            return IdempotentRun(RunState.REPLAY, existing.response_json)

        return IdempotentRun(RunState.IN_PROGRESS)

    if not acquired:
        logger.warning(
            "Idempotency record still contended after cleanup",
            extra_data={"scope": scope},
        )
        return IdempotentRun(RunState.IN_PROGRESS)

    try:
        outcome = await operation()
    except Exception:
        await db.rollback()
        await _finish(db, scope, normalized_key, IdempotencyStatus.FAILED, None, expire_now=True)
        raise

    status = IdempotencyStatus.FAILED if outcome.get("success") is False else IdempotencyStatus.COMPLETED
    await _finish(db, scope, normalized_key, status, outcome)
    return IdempotentRun(RunState.FRESH, outcome)


async def purge_expired_records(db: AsyncSession, older_than: timedelta = timedelta(hours=1)) -> int:
    """Delete records that expired more than ``older_than`` ago"""
    cutoff = datetime.now(timezone.utc) - older_than
    result = await db.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < cutoff)
    )
    await db.commit()
    return result.rowcount or 0
