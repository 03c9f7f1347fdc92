"""
Order Submission Service - turns a checkout form into an order, once.

A retried submission (double tap, flaky network, browser resubmit) carries
the same idempotency key and gets the first result back instead of a second
order. Business rejections are returned as ``{success: False, error,
error_code}`` results and replayed like successes; datastore failures raise
``PersistenceError`` so the key is released for a retry.
"""
import math
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import (
    AppException,
    BusyModeError,
    ErrorCode,
    IdempotencyInProgressError,
    PersistenceError,
    RateLimitedError,
    ValidationException,
)
from bakery_orders.core.logging import get_logger
from bakery_orders.core.rate_limit import RateLimiter, get_rate_limiter
from bakery_orders.core.validation import PhoneNumberValidator, TextSanitizer
from bakery_orders.db.models.order import (
    Fulfilment,
    Order,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentPlan,
    PaymentStatus,
)
from bakery_orders.db.models.order_item import OrderItem
from bakery_orders.domain.services import delivery_fee
from bakery_orders.domain.services.idempotency_service import (
    IdempotentRun,
    request_fingerprint,
    run_idempotent,
)
from bakery_orders.domain.services.pricing import PricingCatalogue, default_catalogue, pizza_offer
from bakery_orders.domain.services.store_settings_service import (
    StoreSettingsService,
    apply_busy_eta_window,
)
from bakery_orders.state_machine import get_initial_payment_status

logger = get_logger(__name__)

NAIROBI_TZ = ZoneInfo("Africa/Nairobi")

MAX_ORDER_NUMBER_ATTEMPTS = 3
PIZZA_CUTOFF_HOUR = 21
NAIROBI_PIZZA_MINIMUM = 2000

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_order_number(prefix: str) -> str:
    """``C``/``P`` + 4 time chars + 2 random chars, e.g. ``C8K2QZ7``"""
    time_part = _to_base36(int(time.time() * 1000))[-4:]
    random_part = "".join(secrets.choice(_BASE36) for _ in range(2))
    return f"{prefix}{time_part}{random_part}"


@dataclass
class OrderContact:
    customer_name: str
    phone: str
    fulfilment: Fulfilment
    payment_method: PaymentMethod = PaymentMethod.MPESA
    payment_plan: PaymentPlan = PaymentPlan.FULL
    mpesa_phone: Optional[str] = None
    delivery_zone_id: Optional[int] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    delivery_address: Optional[str] = None
    preferred_date: Optional[datetime] = None


@dataclass
class CakeOrderInput(OrderContact):
    cake_flavor: str = "Vanilla"
    cake_size: str = "1kg"
    design_notes: Optional[str] = None
    cake_message: Optional[str] = None


@dataclass
class PizzaOrderInput(OrderContact):
    pizza_type: str = "Margherita"
    pizza_size: str = "Medium"
    quantity: int = 1
    toppings: list[str] = field(default_factory=list)
    notes: Optional[str] = None


def rejection(error: AppException) -> dict[str, Any]:
    result = {"success": False, "error": error.message, "error_code": error.error_code.value}
    if isinstance(error, RateLimitedError):
        result["retry_after_ms"] = error.retry_after_ms
    return result


class OrderSubmissionService:
    """Service for customer order submission"""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: Optional[RateLimiter] = None,
        catalogue: Optional[PricingCatalogue] = None,
    ):
        self.db = db
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.catalogue = catalogue or default_catalogue

    # ==================== Entry points ====================

    async def submit_cake_order(self, data: CakeOrderInput, idempotency_key: Optional[str] = None) -> IdempotentRun:
        return await self._submit("order-submit:cake", idempotency_key, data, lambda: self._create_cake_order(data))

    async def submit_pizza_order(self, data: PizzaOrderInput, idempotency_key: Optional[str] = None) -> IdempotentRun:
        return await self._submit("order-submit:pizza", idempotency_key, data, lambda: self._create_pizza_order(data))

    async def _submit(
        self,
        scope: str,
        idempotency_key: Optional[str],
        data: OrderContact,
        create,
    ) -> IdempotentRun:
        async def _run() -> dict[str, Any]:
            try:
                return await create()
            except PersistenceError:
                raise
            except AppException as e:
                logger.info(
                    "Order submission rejected",
                    extra_data={"scope": scope, "error_code": e.error_code.value, "reason": e.message},
                )
                return rejection(e)

        run = await run_idempotent(
            self.db, scope, idempotency_key, _run, request_hash=request_fingerprint(asdict(data))
        )
        if run.in_progress:
            raise IdempotencyInProgressError(scope)
        return run

    # ==================== Shared checks ====================

    async def _check_contact(self, data: OrderContact) -> tuple[str, str, str]:
        """Returns (customer_name, phone, mpesa_phone)"""
        customer_name = TextSanitizer.sanitize(data.customer_name, max_length=100)
        if len(customer_name) < 2:
            raise ValidationException("Please enter your name", field="customer_name")

        phone = PhoneNumberValidator.normalize(data.phone)
        if not PhoneNumberValidator.validate(phone):
            raise ValidationException(
                "Invalid phone number. Use 07XXXXXXXX or 01XXXXXXXX",
                field="phone",
                error_code=ErrorCode.INVALID_PHONE,
            )

        mpesa_phone = phone
        if data.mpesa_phone:
            mpesa_phone = PhoneNumberValidator.normalize(data.mpesa_phone)
            if not PhoneNumberValidator.validate(mpesa_phone):
                raise ValidationException(
                    "Invalid M-Pesa phone number. Use 07XXXXXXXX or 01XXXXXXXX",
                    field="mpesa_phone",
                    error_code=ErrorCode.INVALID_PHONE,
                )

        if PaymentMethod(data.payment_method) != PaymentMethod.MPESA and not settings.ALLOW_CASH_ORDERS:
            raise ValidationException(
                "M-Pesa payment is required (50% deposit or full).",
                field="payment_method",
                error_code=ErrorCode.PAYMENT_METHOD_NOT_ALLOWED,
            )

        await self._check_rate_limits(phone)
        return customer_name, phone, mpesa_phone

    async def _check_rate_limits(self, phone: str) -> None:
        burst = await self.rate_limiter.check(
            f"order-burst:{phone}", settings.ORDER_BURST_LIMIT_MAX, settings.ORDER_BURST_LIMIT_WINDOW_SECONDS
        )
        if not burst.allowed:
            raise RateLimitedError("Too many orders in a short time. Please wait a moment.", burst.retry_after_ms)

        window = await self.rate_limiter.check(
            f"order-submit:{phone}", settings.ORDER_RATE_LIMIT_MAX, settings.ORDER_RATE_LIMIT_WINDOW_SECONDS
        )
        if not window.allowed:
            raise RateLimitedError("Too many orders from this phone number. Please try again later.", window.retry_after_ms)

    async def _quote_delivery(
        self,
        data: OrderContact,
        window_base_minutes: int,
        approximate_window: bool,
    ) -> Optional[delivery_fee.DeliveryQuote]:
        if Fulfilment(data.fulfilment) != Fulfilment.DELIVERY:
            return None

        if data.delivery_lat is not None and data.delivery_lng is not None:
            return delivery_fee.quote_gps_delivery(
                data.delivery_lat,
                data.delivery_lng,
                window_base_minutes=window_base_minutes,
                approximate_window=approximate_window,
            )

        if data.delivery_zone_id:
            zone = await delivery_fee.get_delivery_zone(self.db, data.delivery_zone_id)
            if zone is not None:
                return delivery_fee.quote_zone_delivery(zone)

        raise ValidationException(
            "Please select a delivery location",
            field="delivery_zone_id",
            error_code=ErrorCode.DELIVERY_LOCATION_REQUIRED,
        )

    async def _busy_window(self, window: Optional[str]) -> Optional[str]:
        busy = await StoreSettingsService(self.db).get_busy_mode()
        if busy.blocks_orders:
            raise BusyModeError(busy.message)
        if busy.delays_orders and window:
            return apply_busy_eta_window(window, busy.extra_minutes)
        return window

    # ==================== Persistence ====================

    async def _insert_order(self, prefix: str, order_fields: dict[str, Any], item: OrderItem) -> Order:
        order = None
        try:
            for attempt in range(MAX_ORDER_NUMBER_ATTEMPTS):
                candidate = Order(order_number=generate_order_number(prefix), **order_fields)
                try:
                    async with self.db.begin_nested():
                        self.db.add(candidate)
                        await self.db.flush()
                    order = candidate
                    break
                except IntegrityError:
                    logger.warning(
                        "Order number collision, retrying",
                        extra_data={"attempt": attempt + 1, "order_number": candidate.order_number},
                    )

            if order is None:
                raise PersistenceError(details={"reason": "order_number_exhausted"})

            item.order_id = order.id
            self.db.add(item)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Order insert failed",
                extra_data={"order_number": order.order_number if order else None, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError()

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "order_type": order_fields["order_type"].value,
                "total_amount": order.total_amount,
                "phone": PhoneNumberValidator.mask(order.phone),
            },
        )
        return order

    def _payment_fields(self, data: OrderContact, total: int, mpesa_phone: str) -> dict[str, Any]:
        method = PaymentMethod(data.payment_method)
        plan = PaymentPlan(data.payment_plan) if method == PaymentMethod.MPESA else PaymentPlan.FULL
        return {
            "payment_method": method,
            "payment_status": get_initial_payment_status(method, data.fulfilment),
            "payment_plan": plan,
            "total_amount": total,
            "amount_paid": 0,
            "amount_due": total,
            "deposit_amount": math.ceil(total * settings.DEPOSIT_RATIO),
            "mpesa_phone": mpesa_phone if method == PaymentMethod.MPESA else None,
        }

    @staticmethod
    def _delivery_fields(data: OrderContact, quote: Optional[delivery_fee.DeliveryQuote], window: Optional[str]) -> dict[str, Any]:
        return {
            "delivery_zone_id": quote.zone_id if quote else None,
            "delivery_window": window,
            "delivery_fee": quote.fee if quote else 0,
            "delivery_lat": data.delivery_lat if quote and quote.distance_km is not None else None,
            "delivery_lng": data.delivery_lng if quote and quote.distance_km is not None else None,
            "delivery_address": TextSanitizer.sanitize(data.delivery_address, max_length=500) or None,
            "delivery_distance_km": quote.distance_km if quote else None,
        }

    @staticmethod
    def _result(order: Order) -> dict[str, Any]:
        return {
            "success": True,
            "order_id": order.id,
            "order_number": order.order_number,
            "total_amount": order.total_amount,
            "deposit_amount": order.deposit_amount,
            "payment_status": PaymentStatus(order.payment_status).value,
        }

    # ==================== Cake ====================

    async def _create_cake_order(self, data: CakeOrderInput) -> dict[str, Any]:
        customer_name, phone, mpesa_phone = await self._check_contact(data)

        quote = await self._quote_delivery(
            data, delivery_fee.CAKE_WINDOW_BASE_MINUTES, approximate_window=False
        )
        window = await self._busy_window(quote.window if quote else None)

        item_total = self.catalogue.cake_price(data.cake_flavor, data.cake_size)
        total = item_total + (quote.fee if quote else 0)

        size = self.catalogue.cake_size(data.cake_size)
        design = TextSanitizer.sanitize(data.design_notes, max_length=500) or "None"
        message = TextSanitizer.sanitize(data.cake_message, max_length=200) or "None"
        item = OrderItem(
            item_name=f"{size} {self.catalogue.cake_display_name(data.cake_flavor)}",
            quantity=1,
            notes=f"Design: {design}. Message: {message}",
        )

        order = await self._insert_order(
            "C",
            {
                "order_type": OrderType.CAKE,
                "fulfilment": Fulfilment(data.fulfilment),
                "status": OrderStatus.ORDER_RECEIVED,
                "customer_name": customer_name,
                "phone": phone,
                "preferred_date": data.preferred_date,
                **self._delivery_fields(data, quote, window),
                **self._payment_fields(data, total, mpesa_phone),
            },
            item,
        )
        return self._result(order)

    # ==================== Pizza ====================

    async def _create_pizza_order(self, data: PizzaOrderInput) -> dict[str, Any]:
        customer_name, phone, mpesa_phone = await self._check_contact(data)

        quantity = max(1, int(data.quantity or 1))
        toppings = [TextSanitizer.sanitize(t, max_length=50) for t in (data.toppings or []) if t and t.strip()]
        unit_price = self.catalogue.pizza_unit_price(data.pizza_size, data.pizza_type, len(toppings))

        quote = await self._quote_delivery(
            data, delivery_fee.PIZZA_WINDOW_BASE_MINUTES, approximate_window=True
        )
        # minimum uses the pre-offer subtotal so 2-for-1 orders are not blocked
        if quote is not None and delivery_fee.is_nairobi_zone(quote) and unit_price * quantity < NAIROBI_PIZZA_MINIMUM:
            raise ValidationException(
                "Nairobi pizza orders require a minimum value of KES 2,000",
                error_code=ErrorCode.MINIMUM_ORDER_VALUE,
            )
        window = await self._busy_window(quote.window if quote else "As soon as possible")

        now = datetime.now(timezone.utc)
        preferred_date = data.preferred_date or now
        if now.astimezone(NAIROBI_TZ).hour >= PIZZA_CUTOFF_HOUR:
            preferred_date = now + timedelta(hours=24)

        offer = pizza_offer(data.pizza_size, quantity, unit_price, now)
        item_total = unit_price * quantity - offer.discount
        total = item_total + (quote.fee if quote else 0)

        notes = [TextSanitizer.sanitize(data.notes, max_length=500)]
        if toppings:
            notes.append(f"Extras: {', '.join(toppings)} (+{len(toppings) * 100:,} KES)")
        if offer.discount > 0:
            notes.append(f"Offer: 2-for-1 applied ({offer.free_quantity} free)")
        item = OrderItem(
            item_name=f"{data.pizza_size} {data.pizza_type} Pizza",
            quantity=quantity,
            notes=" | ".join(n for n in notes if n),
        )

        order = await self._insert_order(
            "P",
            {
                "order_type": OrderType.PIZZA,
                "fulfilment": Fulfilment(data.fulfilment),
                "status": OrderStatus.ORDER_RECEIVED,
                "customer_name": customer_name,
                "phone": phone,
                "preferred_date": preferred_date,
                **self._delivery_fields(data, quote, window),
                **self._payment_fields(data, total, mpesa_phone),
            },
            item,
        )
        return self._result(order)
