"""
Payment Attempt Model - audit log and dedup record of provider deliveries.

One row per distinct webhook delivery or status query, unique by checkout
session and by receipt. ``processed_at`` stays NULL until the ledger update
for the delivery has been committed; a row with it set is a confirmed
duplicate for any later delivery with the same key.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from bakery_orders.db.database import Base


class PaymentSource(str, enum.Enum):
    STK_CALLBACK = "stk_callback"
    C2B = "c2b"
    GATEWAY = "gateway"
    STATUS_QUERY = "status_query"


class PaymentAttempt(Base):
    """Raw provider delivery"""

    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(20), nullable=False)
    checkout_request_id = Column(String(100), unique=True, nullable=True)
    merchant_request_id = Column(String(100), nullable=True)
    mpesa_receipt = Column(String(100), unique=True, nullable=True)
    order_id = Column(String(36), nullable=True, index=True)

    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(500), nullable=True)
    amount = Column(Integer, nullable=True)
    phone = Column(String(20), nullable=True)
    raw_payload = Column(JSON, nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_payment_attempts_processed", "processed_at"),
    )

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None
