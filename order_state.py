"""
Order Status Machine
====================
Formal status transitions for a bar order.

State flow:
    new -> accepted -> ready -> processed
    new -> rejected
    accepted -> rejected

Terminal states: rejected, processed.
"""

import logging
from enum import Enum
from typing import FrozenSet, Mapping, Union

from errors import InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    NEW = "new"                # Placed by the guest, not yet seen
    ACCEPTED = "accepted"      # Bartender is making it
    REJECTED = "rejected"      # Bartender declined (terminal)
    READY = "ready"            # Waiting at the bar
    PROCESSED = "processed"    # Handed over (terminal)


VALID_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.NEW: frozenset({OrderStatus.ACCEPTED, OrderStatus.REJECTED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.READY, OrderStatus.REJECTED}),
    OrderStatus.READY: frozenset({OrderStatus.PROCESSED}),
    OrderStatus.REJECTED: frozenset(),  # Terminal state
    OrderStatus.PROCESSED: frozenset(),  # Terminal state
}

ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.NEW,
    OrderStatus.ACCEPTED,
    OrderStatus.READY,
})


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    """
    Coerce a wire value to ``OrderStatus``.

    Raises:
        ValidationError: If the value is not a known status
    """
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid status")


def is_active(status: OrderStatus) -> bool:
    """Check if an order in this status counts toward the one-active-order rule."""
    return status in ACTIVE_STATUSES


def is_terminal(status: OrderStatus) -> bool:
    """Check if no further transition is possible."""
    return not VALID_TRANSITIONS[status]


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """Return ``True`` if an order can move from ``current`` to ``requested``."""
    return requested in VALID_TRANSITIONS.get(current, frozenset())


def validate_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """
    Validate a requested status change.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, requested):
        logger.info(
            f"Invalid transition: {current.value} -> {requested.value}",
            extra={"from_state": current.value, "to_state": requested.value}
        )
        raise InvalidTransitionError(current, requested)
