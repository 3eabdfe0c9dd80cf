"""Kitchen-display status transitions."""

from enum import Enum

from .errors import InvalidTransition
from .models import OrderStatus


class KdsAction(str, Enum):
    bump = "bump"
    recall = "recall"


_BUMP = {
    OrderStatus.open: OrderStatus.preparing,
    OrderStatus.preparing: OrderStatus.ready,
    OrderStatus.ready: OrderStatus.paid,
}

_RECALL = {
    OrderStatus.ready: OrderStatus.preparing,
    OrderStatus.preparing: OrderStatus.open,
}

# Statuses shown on the kitchen display.
KDS_VISIBLE_STATUSES = (OrderStatus.open, OrderStatus.preparing, OrderStatus.ready)


def bump(status: OrderStatus) -> OrderStatus:
    try:
        return _BUMP[status]
    except KeyError:
        raise InvalidTransition()


def recall(status: OrderStatus) -> OrderStatus:
    try:
        return _RECALL[status]
    except KeyError:
        raise InvalidTransition()


def next_status(status: OrderStatus, action: KdsAction) -> OrderStatus:
    if action == KdsAction.bump:
        return bump(status)
    return recall(status)
