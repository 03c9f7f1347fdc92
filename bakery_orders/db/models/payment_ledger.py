"""
Payment Ledger Model - what was recorded for each STK checkout session
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum

from bakery_orders.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryStatus(str, enum.Enum):
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentLedgerEntry(Base):
    """One row per checkout session; SUCCESS means its increment is applied"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), nullable=False, index=True)
    checkout_request_id = Column(String(100), unique=True, nullable=False)
    amount = Column(Integer, nullable=True)
    status = Column(
        SQLEnum(
            LedgerEntryStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=LedgerEntryStatus.INITIATED,
    )
    mpesa_receipt = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
