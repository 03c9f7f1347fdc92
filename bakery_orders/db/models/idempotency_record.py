"""
Idempotency Record Model - result store for mutating operations keyed by
a caller-supplied idempotency key.

The unique (scope, key) insert is the lock: whoever inserts the
``processing`` row runs the operation, everyone else replays the stored
response or waits.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint

from bakery_orders.db.database import Base


class IdempotencyStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(120), nullable=False)
    key = Column(String(120), nullable=False)
    status = Column(String(20), nullable=False, default=IdempotencyStatus.PROCESSING)
    request_hash = Column(String(64), nullable=True)
    response_json = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        Index("ix_idempotency_expires_at", "expires_at"),
    )
