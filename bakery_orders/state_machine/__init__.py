"""
Order and payment state machine
"""
from bakery_orders.state_machine.transitions import (
    ORDER_STATUS_TRANSITIONS,
    PAYMENT_STATUS_TRANSITIONS,
    can_transition_order_status,
    can_transition_payment,
    get_initial_payment_status,
)
from bakery_orders.state_machine.permissions import (
    StaffRole,
    TransitionDecision,
    can_progress_to_status,
)

__all__ = [
    "ORDER_STATUS_TRANSITIONS",
    "PAYMENT_STATUS_TRANSITIONS",
    "can_transition_order_status",
    "can_transition_payment",
    "get_initial_payment_status",
    "StaffRole",
    "TransitionDecision",
    "can_progress_to_status",
]
