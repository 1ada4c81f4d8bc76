"""
Order Errors
============
Typed failures returned by the order operations.

Order operations never raise these across their public boundary; they
return an ``OrderResult`` and leave the protocol mapping (HTTP status,
websocket error frame) to the transport layer.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class OrderError(Exception):
    """Base class for every order operation failure."""

    kind = "error"
    default_user_message = "Something went wrong with your order."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "error": self.user_message}


class ValidationError(OrderError):
    """Missing or malformed input."""

    kind = "validation"

    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class NotFoundError(OrderError):
    """Venue, drink or order absent, or not owned by the given venue."""

    kind = "not_found"

    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class ConflictError(OrderError):
    """The guest already has an active order at this venue."""

    kind = "conflict"
    default_user_message = "You already have an order in progress."


class InvalidTransitionError(OrderError):
    """Requested status change is not in the allow-list."""

    kind = "invalid_transition"

    def __init__(self, current: Any, requested: Any):
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        message = f"Cannot change status from {current_value} to {requested_value}"
        super().__init__(message, user_message=message)
        self.current = current
        self.requested = requested


class PreconditionError(OrderError):
    """Cancel refused: wrong owner, or the bar already acted on the order."""

    kind = "precondition"

    NOT_OWNER = "not_owner"
    ALREADY_ACCEPTED = "already_accepted"

    _USER_MESSAGES = {
        NOT_OWNER: "You can only cancel your own orders.",
        ALREADY_ACCEPTED: "Too late to cancel: the bar has already started on your order.",
    }

    def __init__(self, message: str, reason: str):
        super().__init__(message, user_message=self._USER_MESSAGES.get(reason))
        self.reason = reason


class StoreError(OrderError):
    """Persistence failure. The cause is logged, never exposed."""

    kind = "store"
    default_user_message = "The order service is temporarily unavailable."


@dataclass(frozen=True)
class OrderResult(Generic[T]):
    """Value-or-error outcome of an order operation."""

    value: Optional[T] = None
    error: Optional[OrderError] = None

    @classmethod
    def success(cls, value: T = None) -> "OrderResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: OrderError) -> "OrderResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
