"""
API Routes
"""
from fastapi import APIRouter

from bakery_orders.api.routes.orders import router as orders_router
from bakery_orders.api.routes.staff import router as staff_router
from bakery_orders.api.routes.cron import router as cron_router
from bakery_orders.api.webhooks.mpesa_callback import router as mpesa_callback_router
from bakery_orders.api.webhooks.mpesa_c2b import router as mpesa_c2b_router
from bakery_orders.api.webhooks.gateway import router as gateway_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["Orders"])
router.include_router(staff_router, prefix="/staff", tags=["Staff"])
router.include_router(cron_router, prefix="/cron", tags=["Cron"])
router.include_router(mpesa_callback_router, prefix="/mpesa", tags=["Webhooks"])
router.include_router(mpesa_c2b_router, prefix="/mpesa/c2b", tags=["Webhooks"])
router.include_router(gateway_router, prefix="/webhooks", tags=["Webhooks"])
