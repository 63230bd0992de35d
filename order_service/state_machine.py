"""
state_machine.py — Order and payment status transition tables

The legal transitions live here as data, in one place. Every status change goes
through `check_transition` / `check_payment_transition`; anything not in the tables
is rejected with InvalidTransition rather than coerced.
"""

from datetime import datetime, timedelta

from . import config
from .errors import InvalidTransition
from .models import Order, OrderStatus, PaymentStatus, utc_now

HAPPY_PATH = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

# Staff may skip forward along the happy path up to, but not including, delivery.
OVERRIDE_TARGETS = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED})

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

CANCELLABLE = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if OrderStatus.CANCELLED in targets)


def return_window_open(order: Order, now: datetime | None = None,
                       window_days: int = config.RETURN_WINDOW_DAYS) -> bool:
    if order.status != OrderStatus.DELIVERED or order.delivered_at is None:
        return False
    return (now or utc_now()) <= order.delivered_at + timedelta(days=window_days)


def is_terminal(order: Order, now: datetime | None = None) -> bool:
    """cancelled, returned, or delivered with the return window closed."""
    if order.status == OrderStatus.DELIVERED:
        return not return_window_open(order, now)
    return not ORDER_TRANSITIONS[order.status]


def allowed_targets(order: Order, now: datetime | None = None) -> frozenset[OrderStatus]:
    if is_terminal(order, now):
        return frozenset()
    return ORDER_TRANSITIONS[order.status]


def check_transition(order: Order, target: OrderStatus, *, override: bool = False,
                     now: datetime | None = None):
    """
    Raises InvalidTransition unless `order` may move to `target`.

    Args:
        order (Order): The order as currently stored.
        target (OrderStatus): Requested status.
        override (bool): Staff skip-forward along the happy path (never into delivery,
            never backwards, never out of a terminal state).
        now (datetime | None): Clock used for the return window.
    """
    if target in allowed_targets(order, now):
        return
    if order.status == OrderStatus.DELIVERED and target == OrderStatus.RETURNED:
        raise InvalidTransition(order.order_number, order.status.value, target.value,
                                "return window has closed")
    if override and target in OVERRIDE_TARGETS and order.status in HAPPY_PATH \
            and HAPPY_PATH.index(target) > HAPPY_PATH.index(order.status):
        return
    reason = "terminal state" if is_terminal(order, now) else None
    raise InvalidTransition(order.order_number, order.status.value, target.value, reason)


def check_payment_transition(order: Order, target: PaymentStatus):
    if target not in PAYMENT_TRANSITIONS[order.payment_status]:
        raise InvalidTransition(order.order_number, f"payment:{order.payment_status.value}",
                                f"payment:{target.value}")
