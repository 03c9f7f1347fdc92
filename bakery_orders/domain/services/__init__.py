"""
Domain Services
"""
from bakery_orders.domain.services.order_service import OrderSubmissionService
from bakery_orders.domain.services.payment_ledger_service import PaymentLedgerService
from bakery_orders.domain.services.reconciliation_service import ReconciliationService
from bakery_orders.domain.services.stk_service import StkPushService
from bakery_orders.domain.services.staff_order_service import StaffOrderService
from bakery_orders.domain.services.store_settings_service import StoreSettingsService
from bakery_orders.domain.services.admin_payment_alert import AdminPaymentAlertService
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient

__all__ = [
    "OrderSubmissionService",
    "PaymentLedgerService",
    "ReconciliationService",
    "StkPushService",
    "StaffOrderService",
    "StoreSettingsService",
    "AdminPaymentAlertService",
    "MpesaDarajaClient",
]
