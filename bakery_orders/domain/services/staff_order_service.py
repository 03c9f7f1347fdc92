"""
Staff Order Service - kitchen, delivery and admin actions on orders
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bakery_orders.core.exceptions import (
    InvalidStateTransitionError,
    OrderNotFoundError,
    StateConflictError,
)
from bakery_orders.core.logging import get_logger
from bakery_orders.db.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from bakery_orders.state_machine import (
    StaffRole,
    can_progress_to_status,
    can_transition_order_status,
    can_transition_payment,
)

logger = get_logger(__name__)


class StaffOrderService:
    """Service for staff-driven order changes"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_order(self, order_id: str) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _conditional_update(self, order: Order, expected_status: OrderStatus, **values) -> Order:
        """Write only if nobody moved the order since we read it"""
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise StateConflictError(
                "Order was updated by someone else. Refresh and try again.",
                details={"order_id": order.id},
            )
        await self.db.commit()
        return await self._get_order(order.id)

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        role: StaffRole | str,
    ) -> Order:
        order = await self._get_order(order_id)
        current = OrderStatus(order.status)
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidStateTransitionError(current.value, str(new_status), order_id)

        if current == target:
            return order

        if not can_transition_order_status(current, target):
            raise InvalidStateTransitionError(current.value, target.value, order_id)

        decision = can_progress_to_status(order, target, role)
        if not decision.allowed:
            logger.info(
                "Order status change refused",
                extra_data={"order_id": order_id, "target": target.value, "role": str(role), "reason": decision.reason},
            )
            raise StateConflictError(decision.reason or "Action not allowed for your role", details={"order_id": order_id})

        updated = await self._conditional_update(order, current, status=target)
        logger.info(
            "Order status changed",
            extra_data={"order_id": order_id, "from": current.value, "to": target.value, "role": str(role)},
        )
        return updated

    async def mark_order_as_paid(self, order_id: str, transaction_id: Optional[str] = None) -> Order:
        """Admin confirmation of a payment made outside the automated channels"""
        order = await self._get_order(order_id)
        current = PaymentStatus(order.payment_status)
        if current == PaymentStatus.PAID:
            return order
        if not can_transition_payment(current, PaymentStatus.PAID):
            raise InvalidStateTransitionError(current.value, PaymentStatus.PAID.value, order_id)

        now = datetime.now(timezone.utc)
        values = {
            "payment_status": PaymentStatus.PAID,
            "amount_paid": order.total_amount,
            "amount_due": 0,
            "last_request_amount": None,
            "paid_at": now,
            "updated_at": now,
        }
        if transaction_id and transaction_id.strip():
            values["transaction_id"] = transaction_id.strip()[:100]

        await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status != PaymentStatus.PAID)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info("Order marked as paid by admin", extra_data={"order_id": order_id})
        return await self._get_order(order_id)

    async def complete_delivery(self, order_id: str, collected_cash: bool = False) -> Order:
        """
        Hand-over at the door. Cash orders and M-Pesa deposit orders settle
        the rest in cash here; an unpaid M-Pesa order must go back.
        """
        order = await self._get_order(order_id)
        if OrderStatus(order.status) != OrderStatus.OUT_FOR_DELIVERY:
            raise StateConflictError("Order is not currently Out for Delivery", details={"order_id": order_id})

        values: dict = {"status": OrderStatus.DELIVERED}
        method = PaymentMethod(order.payment_method)
        payment_status = PaymentStatus(order.payment_status)
        settle_in_cash = False

        if method == PaymentMethod.CASH:
            if not collected_cash:
                raise StateConflictError("You must confirm cash collection to complete this delivery")
            settle_in_cash = payment_status != PaymentStatus.PAID
        elif payment_status == PaymentStatus.DEPOSIT_PAID:
            if not collected_cash:
                raise StateConflictError(
                    "Confirm cash collection for the remaining balance to complete delivery"
                )
            settle_in_cash = True
        elif payment_status != PaymentStatus.PAID:
            raise StateConflictError("CRITICAL: Cannot deliver unpaid M-Pesa order. Return to shop.")

        if settle_in_cash:
            values.update(
                payment_status=PaymentStatus.PAID,
                amount_paid=order.total_amount,
                amount_due=0,
                paid_at=datetime.now(timezone.utc),
            )

        updated = await self._conditional_update(order, OrderStatus.OUT_FOR_DELIVERY, **values)
        logger.info(
            "Delivery completed",
            extra_data={"order_id": order_id, "collected_cash": settle_in_cash},
        )
        return updated
