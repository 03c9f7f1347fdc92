"""
Staff API Routes - kitchen, delivery and admin actions
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.api.dependencies.staff_auth import require_admin_role, require_staff_role
from bakery_orders.core.exceptions import StateConflictError
from bakery_orders.db.database import get_db
from bakery_orders.db.models.order import Order, OrderStatus
from bakery_orders.db.models.store_settings import BusyModeAction
from bakery_orders.domain.services.staff_order_service import StaffOrderService
from bakery_orders.domain.services.store_settings_service import (
    DEFAULT_EXTRA_MINUTES,
    MAX_EXTRA_MINUTES,
    StoreSettingsService,
)
from bakery_orders.state_machine import StaffRole

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class MarkPaidRequest(BaseModel):
    transaction_id: Optional[str] = Field(None, max_length=100)


class CompleteDeliveryRequest(BaseModel):
    collected_cash: bool = False


class BusyModeRequest(BaseModel):
    enabled: bool
    action: BusyModeAction = BusyModeAction.DISABLE_ORDERS
    extra_minutes: int = Field(DEFAULT_EXTRA_MINUTES, ge=0, le=MAX_EXTRA_MINUTES)
    message: Optional[str] = Field(None, max_length=300)


class StaffOrderResponse(BaseModel):
    id: str
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    total_amount: int
    amount_paid: int
    amount_due: int
    transaction_id: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "StaffOrderResponse":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=OrderStatus(order.status).value,
            payment_status=str(getattr(order.payment_status, "value", order.payment_status)),
            payment_method=str(getattr(order.payment_method, "value", order.payment_method)),
            total_amount=order.total_amount,
            amount_paid=order.amount_paid or 0,
            amount_due=order.remaining_amount,
            transaction_id=order.transaction_id,
        )


@router.post(
    "/orders/{order_id}/status",
    response_model=StaffOrderResponse,
    summary="Move an order through the kitchen / delivery flow",
)
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    role: StaffRole = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
) -> StaffOrderResponse:
    order = await StaffOrderService(db).update_order_status(order_id, body.status, role)
    return StaffOrderResponse.from_order(order)


@router.post(
    "/orders/{order_id}/mark-paid",
    response_model=StaffOrderResponse,
    summary="Record a payment confirmed outside M-Pesa automation",
)
async def mark_order_paid(
    order_id: str,
    body: MarkPaidRequest,
    _: StaffRole = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db),
) -> StaffOrderResponse:
    order = await StaffOrderService(db).mark_order_as_paid(order_id, body.transaction_id)
    return StaffOrderResponse.from_order(order)


@router.post(
    "/orders/{order_id}/complete-delivery",
    response_model=StaffOrderResponse,
    summary="Hand an order over to the customer",
)
async def complete_delivery(
    order_id: str,
    body: CompleteDeliveryRequest,
    role: StaffRole = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
) -> StaffOrderResponse:
    if role not in (StaffRole.ADMIN, StaffRole.DELIVERY):
        raise StateConflictError("Only delivery staff can complete deliveries")
    order = await StaffOrderService(db).complete_delivery(order_id, collected_cash=body.collected_cash)
    return StaffOrderResponse.from_order(order)


@router.put("/store/busy-mode", summary="Toggle busy mode")
async def update_busy_mode(
    body: BusyModeRequest,
    _: StaffRole = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db),
) -> dict:
    busy = await StoreSettingsService(db).update_busy_mode(
        enabled=body.enabled,
        action=body.action,
        extra_minutes=body.extra_minutes,
        message=body.message,
    )
    return {
        "enabled": busy.enabled,
        "action": busy.action.value,
        "extra_minutes": busy.extra_minutes,
        "message": busy.message,
    }
