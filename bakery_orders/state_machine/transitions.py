"""
Order and payment status transition tables
"""
from bakery_orders.db.models.order import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Fulfilment,
)

ORDER_STATUS_TRANSITIONS = {
    OrderStatus.ORDER_RECEIVED: [
        OrderStatus.IN_KITCHEN,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.IN_KITCHEN: [
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.READY_FOR_PICKUP: [
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.COLLECTED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.OUT_FOR_DELIVERY: [
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.DELIVERED: [],
    OrderStatus.COLLECTED: [],
    OrderStatus.CANCELLED: [],
}

PAYMENT_STATUS_TRANSITIONS = {
    PaymentStatus.PENDING: [
        PaymentStatus.INITIATED,
        PaymentStatus.DEPOSIT_PAID,
        PaymentStatus.PAID,
        PaymentStatus.PAY_ON_DELIVERY,
        PaymentStatus.PAY_ON_PICKUP,
        PaymentStatus.FAILED,
    ],
    PaymentStatus.INITIATED: [
        PaymentStatus.PENDING,
        PaymentStatus.DEPOSIT_PAID,
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
    ],
    PaymentStatus.DEPOSIT_PAID: [PaymentStatus.PAID],
    PaymentStatus.FAILED: [
        PaymentStatus.PENDING,
        PaymentStatus.INITIATED,
        PaymentStatus.DEPOSIT_PAID,
        PaymentStatus.PAID,
    ],
    PaymentStatus.PAY_ON_DELIVERY: [PaymentStatus.PAID],
    PaymentStatus.PAY_ON_PICKUP: [PaymentStatus.PAID],
    PaymentStatus.PAID: [],
}

TERMINAL_ORDER_STATUSES = frozenset(
    status for status, targets in ORDER_STATUS_TRANSITIONS.items() if not targets
)


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def can_transition_order_status(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    current_status = _coerce(OrderStatus, current)
    target_status = _coerce(OrderStatus, target)
    if current_status is None or target_status is None:
        return False
    if current_status == target_status:
        return True
    return target_status in ORDER_STATUS_TRANSITIONS.get(current_status, [])


def can_transition_payment(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    """Self-transitions are allowed (idempotent no-op); ``paid`` has no exits"""
    current_status = _coerce(PaymentStatus, current)
    target_status = _coerce(PaymentStatus, target)
    if current_status is None or target_status is None:
        return False
    if current_status == target_status:
        return True
    return target_status in PAYMENT_STATUS_TRANSITIONS.get(current_status, [])


def get_initial_payment_status(
    payment_method: PaymentMethod | str,
    fulfilment: Fulfilment | str,
) -> PaymentStatus:
    if _coerce(PaymentMethod, payment_method) == PaymentMethod.CASH:
        if _coerce(Fulfilment, fulfilment) == Fulfilment.DELIVERY:
            return PaymentStatus.PAY_ON_DELIVERY
        return PaymentStatus.PAY_ON_PICKUP
    return PaymentStatus.PENDING
