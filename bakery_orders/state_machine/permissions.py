"""
Role-aware authorization of order status changes.

Kitchen and delivery staff each own a slice of the order lifecycle. On top of
the role split, kitchen staff are held to a strict payment lock: an M-Pesa
delivery order is not prepared until at least its deposit has landed.
"""
import enum
from dataclasses import dataclass

from bakery_orders.db.models.order import (
    Fulfilment,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)


class StaffRole(str, enum.Enum):
    ADMIN = "admin"
    KITCHEN = "kitchen"
    DELIVERY = "delivery"


PREPARATION_STATUSES = frozenset({OrderStatus.IN_KITCHEN, OrderStatus.READY_FOR_PICKUP})

# payment states that unlock preparation of a prepaid delivery order
_PREPARATION_UNLOCKED = frozenset({PaymentStatus.DEPOSIT_PAID, PaymentStatus.PAID})

_KITCHEN_FORBIDDEN = frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED})


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    reason: str | None = None


def requires_payment_before_preparation(order: Order) -> bool:
    """Unpaid M-Pesa delivery orders stay locked out of the kitchen"""
    return (
        Fulfilment(order.fulfilment) == Fulfilment.DELIVERY
        and PaymentMethod(order.payment_method) == PaymentMethod.MPESA
        and PaymentStatus(order.payment_status) not in _PREPARATION_UNLOCKED
    )


def can_progress_to_status(
    order: Order,
    target: OrderStatus,
    role: StaffRole | str | None,
) -> TransitionDecision:
    try:
        staff_role = StaffRole(role) if role is not None else None
    except ValueError:
        staff_role = None

    if staff_role is None:
        return TransitionDecision(False, "Unauthorized role")

    target = OrderStatus(target)

    if staff_role == StaffRole.ADMIN:
        return TransitionDecision(True)

    if staff_role == StaffRole.KITCHEN:
        if target in _KITCHEN_FORBIDDEN:
            return TransitionDecision(False, "Kitchen staff cannot dispatch or deliver orders")
        if target in PREPARATION_STATUSES and requires_payment_before_preparation(order):
            return TransitionDecision(
                False,
                "Payment required: M-Pesa delivery orders must have at least the deposit "
                "paid before preparation",
            )
        return TransitionDecision(True)

    # delivery
    if target in PREPARATION_STATUSES:
        return TransitionDecision(False, "Delivery staff cannot change kitchen statuses")
    if target == OrderStatus.OUT_FOR_DELIVERY and OrderStatus(order.status) != OrderStatus.READY_FOR_PICKUP:
        return TransitionDecision(False, "Order must be ready before it can go out for delivery")
    return TransitionDecision(True)
