"""
Order Model - customer orders and their aggregate payment position
"""
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Float, Index, Text, CheckConstraint
from sqlalchemy.orm import relationship

from bakery_orders.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def generate_order_id() -> str:
    """Opaque, unguessable primary key"""
    return str(uuid.uuid4())


class OrderType(str, enum.Enum):
    CAKE = "cake"
    PIZZA = "pizza"


class Fulfilment(str, enum.Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class OrderStatus(str, enum.Enum):
    ORDER_RECEIVED = "order_received"
    IN_KITCHEN = "in_kitchen"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COLLECTED = "collected"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    CASH = "cash"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    INITIATED = "initiated"
    DEPOSIT_PAID = "deposit_paid"
    PAID = "paid"
    PAY_ON_DELIVERY = "pay_on_delivery"
    PAY_ON_PICKUP = "pay_on_pickup"
    FAILED = "failed"


class PaymentPlan(str, enum.Enum):
    FULL = "full"
    DEPOSIT = "deposit"


def _enum_column(enum_cls, **kwargs) -> Column:
    # stored as plain strings so new states need no ALTER TYPE
    return Column(
        SQLEnum(enum_cls, native_enum=False, length=32, values_callable=_enum_values),
        **kwargs,
    )


class Order(Base):
    """Customer order. Amounts are whole Kenyan shillings."""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_order_id)
    order_number = Column(String(16), unique=True, nullable=False, index=True)

    order_type = _enum_column(OrderType, nullable=False)
    fulfilment = _enum_column(Fulfilment, nullable=False)
    status = _enum_column(OrderStatus, nullable=False, default=OrderStatus.ORDER_RECEIVED, index=True)

    # Customer
    customer_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False, index=True)

    # Delivery
    delivery_zone_id = Column(Integer, nullable=True)
    delivery_window = Column(String(100), nullable=True)
    delivery_fee = Column(Integer, nullable=False, default=0)
    delivery_lat = Column(Float, nullable=True)
    delivery_lng = Column(Float, nullable=True)
    delivery_address = Column(Text, nullable=True)
    delivery_distance_km = Column(Float, nullable=True)
    preferred_date = Column(DateTime(timezone=True), nullable=True)

    # Payment position: amount_paid + amount_due == total_amount
    payment_method = _enum_column(PaymentMethod, nullable=False, default=PaymentMethod.MPESA)
    payment_status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_plan = _enum_column(PaymentPlan, nullable=False, default=PaymentPlan.FULL)
    total_amount = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=False, default=0)
    amount_due = Column(Integer, nullable=False)
    deposit_amount = Column(Integer, nullable=False, default=0)

    # Outstanding STK push, cleared once the push resolves
    last_request_amount = Column(Integer, nullable=True)
    last_checkout_request_id = Column(String(100), nullable=True, index=True)
    mpesa_phone = Column(String(20), nullable=True)
    # Final provider receipt; receiving it twice must not credit twice
    transaction_id = Column(String(100), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        CheckConstraint("amount_paid >= 0", name="ck_orders_amount_paid_non_negative"),
        CheckConstraint("amount_due >= 0", name="ck_orders_amount_due_non_negative"),
        Index("ix_orders_payment_status_created", "payment_status", "created_at"),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def remaining_amount(self) -> int:
        return max((self.total_amount or 0) - (self.amount_paid or 0), 0)
