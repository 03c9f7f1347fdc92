"""
Database Models
"""
from bakery_orders.db.models.order import Order
from bakery_orders.db.models.order_item import OrderItem
from bakery_orders.db.models.payment_attempt import PaymentAttempt
from bakery_orders.db.models.payment_ledger import PaymentLedgerEntry
from bakery_orders.db.models.idempotency_record import IdempotencyRecord
from bakery_orders.db.models.store_settings import StoreSettings, DeliveryZone

__all__ = [
    "Order",
    "OrderItem",
    "PaymentAttempt",
    "PaymentLedgerEntry",
    "IdempotencyRecord",
    "StoreSettings",
    "DeliveryZone",
]
