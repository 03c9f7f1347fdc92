"""
Order API Routes - customer checkout, M-Pesa prompts and payment status
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.exceptions import ErrorCode, IdempotencyInProgressError
from bakery_orders.core.logging import get_correlation_id, get_logger
from bakery_orders.core.validation import TextSanitizer
from bakery_orders.db.database import get_db
from bakery_orders.db.models.order import Fulfilment, PaymentMethod, PaymentPlan
from bakery_orders.domain.services.idempotency_service import IdempotentRun
from bakery_orders.domain.services.mpesa_client import MpesaDarajaClient, get_mpesa_client
from bakery_orders.domain.services.order_service import (
    CakeOrderInput,
    OrderSubmissionService,
    PizzaOrderInput,
)
from bakery_orders.domain.services.stk_service import StkPushService

logger = get_logger(__name__)

router = APIRouter()

_ERROR_STATUS = {
    ErrorCode.RATE_LIMITED.value: 429,
    ErrorCode.STORE_BUSY.value: 503,
    ErrorCode.PERSISTENCE_ERROR.value: 500,
}


class OrderContactRequest(BaseModel):
    """Fields shared by every checkout form"""
    customer_name: str = Field(..., max_length=100)
    phone: str = Field(..., max_length=20)
    fulfilment: Fulfilment = Fulfilment.DELIVERY
    payment_method: PaymentMethod = PaymentMethod.MPESA
    payment_plan: PaymentPlan = PaymentPlan.FULL
    mpesa_phone: Optional[str] = Field(None, max_length=20)
    delivery_zone_id: Optional[int] = None
    delivery_lat: Optional[float] = Field(None, ge=-90, le=90)
    delivery_lng: Optional[float] = Field(None, ge=-180, le=180)
    delivery_address: Optional[str] = Field(None, max_length=500)
    preferred_date: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(None, max_length=200)

    @field_validator("delivery_address")
    @classmethod
    def sanitize_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=500) or None


class CakeOrderRequest(OrderContactRequest):
    cake_flavor: str = "Vanilla"
    cake_size: str = "1kg"
    design_notes: Optional[str] = Field(None, max_length=1000)
    cake_message: Optional[str] = Field(None, max_length=200)


class PizzaOrderRequest(OrderContactRequest):
    pizza_type: str = "Margherita"
    pizza_size: str = "Medium"
    quantity: int = Field(1, ge=1, le=20)
    toppings: list[str] = Field(default_factory=list, max_length=10)
    notes: Optional[str] = Field(None, max_length=1000)


class StkPushRequest(BaseModel):
    phone: str = Field(..., max_length=20)
    idempotency_key: Optional[str] = Field(None, max_length=200)


class BalancePushRequest(BaseModel):
    phone: str = Field(..., max_length=20)


def _submission_response(run: IdempotentRun) -> JSONResponse:
    """201 new order, 200 replay of a stored success, 4xx/5xx stored or fresh rejections"""
    result = run.result or {}
    if result.get("success"):
        status_code = 200 if run.is_replay else 201
    else:
        status_code = _ERROR_STATUS.get(result.get("error_code"), 400)

    headers = {}
    if result.get("retry_after_ms"):
        headers["Retry-After"] = str(max(1, -(-int(result["retry_after_ms"]) // 1000)))
    return JSONResponse(
        status_code=status_code,
        content={**result, "replayed": run.is_replay},
        headers=headers,
    )


def _in_progress_response(e: IdempotencyInProgressError) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={"success": False, "in_progress": True, "error": e.message},
    )


def _payment_response(result: dict) -> JSONResponse:
    if result.get("success"):
        return JSONResponse(status_code=200, content=result)
    status_code = 429 if result.get("retry_after_ms") else 400
    return JSONResponse(status_code=status_code, content=result)


@router.post(
    "/cake",
    summary="Place a cake order",
    responses={
        201: {"description": "Order created"},
        200: {"description": "Same idempotency key: first result replayed"},
        202: {"description": "Same idempotency key still being processed"},
    },
)
async def create_cake_order(
    body: CakeOrderRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    data = CakeOrderInput(**body.model_dump(exclude={"idempotency_key"}))
    try:
        run = await OrderSubmissionService(db).submit_cake_order(
            data, idempotency_key or body.idempotency_key
        )
    except IdempotencyInProgressError as e:
        return _in_progress_response(e)
    return _submission_response(run)


@router.post(
    "/pizza",
    summary="Place a pizza order",
    responses={
        201: {"description": "Order created"},
        200: {"description": "Same idempotency key: first result replayed"},
        202: {"description": "Same idempotency key still being processed"},
    },
)
async def create_pizza_order(
    body: PizzaOrderRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    data = PizzaOrderInput(**body.model_dump(exclude={"idempotency_key"}))
    try:
        run = await OrderSubmissionService(db).submit_pizza_order(
            data, idempotency_key or body.idempotency_key
        )
    except IdempotencyInProgressError as e:
        return _in_progress_response(e)
    return _submission_response(run)


@router.post("/{order_id}/stk-push", summary="Send an M-Pesa prompt for an order")
async def stk_push(
    order_id: str,
    body: StkPushRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    mpesa_client: MpesaDarajaClient = Depends(get_mpesa_client),
) -> JSONResponse:
    result = await StkPushService(db, mpesa_client=mpesa_client).initiate(
        order_id,
        body.phone,
        idempotency_key=idempotency_key or body.idempotency_key,
        correlation_id=get_correlation_id(),
    )
    return _payment_response(result)


@router.post("/{order_id}/balance-push", summary="Prompt for the balance of a deposit order")
async def balance_push(
    order_id: str,
    body: BalancePushRequest,
    db: AsyncSession = Depends(get_db),
    mpesa_client: MpesaDarajaClient = Depends(get_mpesa_client),
) -> JSONResponse:
    result = await StkPushService(db, mpesa_client=mpesa_client).initiate_balance(order_id, body.phone)
    return _payment_response(result)


@router.get("/{order_ref}/payment", summary="Payment position of an order")
async def payment_snapshot(
    order_ref: str,
    phone: Optional[str] = Query(None, max_length=20),
    db: AsyncSession = Depends(get_db),
    mpesa_client: MpesaDarajaClient = Depends(get_mpesa_client),
) -> dict:
    return await StkPushService(db, mpesa_client=mpesa_client).get_payment_snapshot(order_ref, phone)
