"""
Order State Machine
===================

Pure decision logic for order status progression. No I/O.

A transition is legal iff the requested status is a successor of the current
status in the base table AND is allowed for the order's delivery method.
"""

from typing import Dict, FrozenSet

from app.models.order import OrderStatus, DeliveryMethod
from app.services.exceptions import IllegalTransitionError


# Base transition table, independent of delivery method
VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.RECEIVED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),  # Terminal
    OrderStatus.CANCELLED: frozenset(),  # Terminal
}

# Statuses an order may ever be in, per delivery method
STATUSES_BY_DELIVERY_METHOD: Dict[DeliveryMethod, FrozenSet[OrderStatus]] = {
    DeliveryMethod.DELIVERY: frozenset({
        OrderStatus.RECEIVED,
        OrderStatus.PREPARING,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    DeliveryMethod.PICKUP: frozenset({
        OrderStatus.RECEIVED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    status for status, successors in VALID_TRANSITIONS.items() if not successors
)


def next_allowed_statuses(current: OrderStatus, delivery_method: DeliveryMethod) -> FrozenSet[OrderStatus]:
    """Statuses reachable in one step from ``current`` for this delivery method."""
    current = OrderStatus(current)
    delivery_method = DeliveryMethod(delivery_method)
    return VALID_TRANSITIONS[current] & STATUSES_BY_DELIVERY_METHOD[delivery_method]


def is_transition_legal(current: OrderStatus, requested: OrderStatus, delivery_method: DeliveryMethod) -> bool:
    return OrderStatus(requested) in next_allowed_statuses(current, delivery_method)


def ensure_transition_legal(current: OrderStatus, requested: OrderStatus, delivery_method: DeliveryMethod) -> None:
    """Raise IllegalTransitionError carrying the legal next statuses if the move is not allowed."""
    allowed = next_allowed_statuses(current, delivery_method)
    if OrderStatus(requested) not in allowed:
        raise IllegalTransitionError(
            current_status=OrderStatus(current).value,
            requested_status=OrderStatus(requested).value,
            allowed_next=[status.value for status in allowed],
            delivery_method=DeliveryMethod(delivery_method).value,
        )


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES
