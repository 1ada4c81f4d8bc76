"""
Order Module
============
Order lifecycle operations for a venue's bar.

Guarantees:
- At most one active (new/accepted/ready) order per guest per venue
- Status changes follow the allow-list in order_state
- Every committed change is published to the venue's live connections
- Operations return OrderResult; they never raise OrderError to callers
"""

import asyncio
import dataclasses
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

import structlog
from prometheus_client import Counter

from broadcaster import EventType
from errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OrderError,
    OrderResult,
    PreconditionError,
    StoreError,
    ValidationError,
)
from order_state import OrderStatus, parse_status, validate_transition

if TYPE_CHECKING:
    from db import OrderStore


logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

orders_created_total = Counter(
    'orders_created_total',
    'Orders placed by guests'
)
order_transitions_total = Counter(
    'order_transitions_total',
    'Order status transitions',
    ['from_status', 'to_status']
)
orders_cancelled_total = Counter(
    'orders_cancelled_total',
    'Orders cancelled by guests'
)
order_operation_failures_total = Counter(
    'order_operation_failures_total',
    'Failed order operations',
    ['operation', 'kind']
)


DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Immutable snapshot of a stored order.

    ``drink_title`` is copied at creation time, so renaming a drink later
    does not rewrite past orders.
    """
    id: Optional[int]
    venue_id: int
    customer_name: str
    drink_id: int
    drink_title: str
    status: OrderStatus = OrderStatus.NEW
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def with_id(self, order_id: int) -> "Order":
        return dataclasses.replace(self, id=order_id)

    def with_status(self, status: OrderStatus, updated_at: datetime) -> "Order":
        """This is the ONLY way to "change" status - creates a new object."""
        return dataclasses.replace(self, status=status, updated_at=updated_at)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation (camelCase, ISO timestamps)."""
        return {
            "id": self.id,
            "venueId": self.venue_id,
            "customerName": self.customer_name,
            "drinkId": self.drink_id,
            "drinkTitle": self.drink_title,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def to_row(self) -> Dict[str, Any]:
        """Storage representation; ``id`` is omitted until assigned."""
        row = {
            "venue_id": self.venue_id,
            "customer_name": self.customer_name,
            "drink_id": self.drink_id,
            "drink_title": self.drink_title,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=int(row["id"]),
            venue_id=int(row["venue_id"]),
            customer_name=row["customer_name"],
            drink_id=int(row["drink_id"]),
            drink_title=row["drink_title"],
            status=OrderStatus(row["status"]),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )


# ============================================================================
# INPUT NORMALIZATION
# ============================================================================

def _require_id(value: Any, name: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"{name} is required")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{name} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{name} must be an integer")
    if parsed <= 0:
        raise ValidationError(f"{name} must be positive")
    return parsed


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


# ============================================================================
# ORDER SERVICE
# ============================================================================

class OrderService:
    """
    Order state machine over an OrderStore.

    The broadcaster is a required collaborator; anything exposing
    ``publish_to_venue(venue_id, event_type, **payload)`` works, which
    lets tests substitute a recording fake.
    """

    def __init__(
        self,
        store: "OrderStore",
        broadcaster,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.store = store
        self.broadcaster = broadcaster
        self._clock = clock

        # (venue_id, customer_name) -> [lock, users]
        self._create_locks: Dict[Tuple[int, str], list] = {}

    @asynccontextmanager
    async def _customer_lock(self, venue_id: int, customer_name: str):
        """Serialize creates for one guest so check-then-insert cannot interleave."""
        key = (venue_id, customer_name)
        entry = self._create_locks.get(key)
        if entry is None:
            entry = self._create_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._create_locks[key]

    # ========================================================================
    # LIFECYCLE OPERATIONS
    # ========================================================================

    async def create_order(
        self,
        venue_id: Any,
        customer_name: Any,
        drink_id: Any,
        drink_title: Any
    ) -> OrderResult[Order]:
        """
        Place a new order with status ``new``.

        Fails with NotFoundError (venue/drink), ValidationError (input,
        out of stock) or ConflictError (guest already has an active order).
        """
        try:
            order = await self._create(venue_id, customer_name, drink_id, drink_title)
        except OrderError as e:
            return self._failed("create", e)
        return OrderResult.success(order)

    async def _create(self, venue_id, customer_name, drink_id, drink_title) -> Order:
        venue_id = _require_id(venue_id, "venueId")
        customer_name = _require_text(customer_name, "customerName")
        drink_id = _require_id(drink_id, "drinkId")
        drink_title = _require_text(drink_title, "drinkTitle")

        async with self._customer_lock(venue_id, customer_name):
            venue = await self.store.find_venue(venue_id)
            if venue is None:
                raise NotFoundError("Venue not found")

            drink = await self.store.find_drink(drink_id, venue_id)
            if drink is None:
                raise NotFoundError("Drink not found")
            if not drink.in_stock:
                raise ValidationError("Drink is currently out of stock")

            existing = await self.store.find_active_order(venue_id, customer_name)
            if existing is not None:
                raise ConflictError(
                    f"active order exists (order {existing.id}, status {existing.status.value})"
                )

            now = self._clock()
            order = await self.store.insert_order(Order(
                id=None,
                venue_id=venue_id,
                customer_name=customer_name,
                drink_id=drink_id,
                drink_title=drink_title,
                status=OrderStatus.NEW,
                created_at=now,
                updated_at=now,
            ))

        orders_created_total.inc()
        logger.info(
            "order_created",
            order_id=order.id,
            venue_id=venue_id,
            customer_name=customer_name,
            drink_id=drink_id
        )

        self._notify(venue_id, EventType.NEW_ORDER, order=order.to_dict())
        return order

    async def transition(
        self,
        order_id: Any,
        venue_id: Any,
        requested_status: Any
    ) -> OrderResult[Order]:
        """
        Move an order to ``requested_status`` if the allow-list permits it.

        The store write is conditioned on the status read here; if another
        request changed it first, the fresh status is reported instead.
        """
        try:
            order = await self._transition(order_id, venue_id, requested_status)
        except OrderError as e:
            return self._failed("transition", e)
        return OrderResult.success(order)

    async def _transition(self, order_id, venue_id, requested_status) -> Order:
        order_id = _require_id(order_id, "orderId")
        venue_id = _require_id(venue_id, "venueId")
        if requested_status is None or requested_status == "":
            raise ValidationError("status is required")
        requested = parse_status(requested_status)

        order = await self.store.find_order(order_id, venue_id)
        if order is None:
            raise NotFoundError("Order not found")

        validate_transition(order.status, requested)

        updated = await self.store.update_order_status(
            order_id,
            venue_id,
            expected_status=order.status,
            new_status=requested,
            updated_at=self._clock()
        )

        if updated is None:
            # Lost a race with another writer
            current = await self.store.find_order(order_id, venue_id)
            if current is None:
                raise NotFoundError("Order not found")
            raise InvalidTransitionError(current.status, requested)

        order_transitions_total.labels(
            from_status=order.status.value,
            to_status=requested.value
        ).inc()
        logger.info(
            "order_status_updated",
            order_id=order_id,
            venue_id=venue_id,
            from_status=order.status.value,
            to_status=requested.value
        )

        self._notify(venue_id, EventType.ORDER_STATUS_UPDATED, order=updated.to_dict())
        return updated

    async def cancel(
        self,
        order_id: Any,
        venue_id: Any,
        customer_name: Any
    ) -> OrderResult[Order]:
        """
        Delete a guest's own order while it is still ``new``.

        Returns the removed order on success.
        """
        try:
            order = await self._cancel(order_id, venue_id, customer_name)
        except OrderError as e:
            return self._failed("cancel", e)
        return OrderResult.success(order)

    async def _cancel(self, order_id, venue_id, customer_name) -> Order:
        order_id = _require_id(order_id, "orderId")
        venue_id = _require_id(venue_id, "venueId")
        customer_name = _require_text(customer_name, "customerName")

        order = await self.store.find_order(order_id, venue_id)
        if order is None:
            raise NotFoundError("Order not found")

        if order.customer_name != customer_name:
            raise PreconditionError(
                f"order {order_id} belongs to another customer",
                PreconditionError.NOT_OWNER
            )

        if order.status != OrderStatus.NEW:
            raise PreconditionError(
                f"order {order_id} is {order.status.value}, only new orders can be cancelled",
                PreconditionError.ALREADY_ACCEPTED
            )

        deleted = await self.store.delete_order(order_id, venue_id, expected_status=OrderStatus.NEW)

        if not deleted:
            current = await self.store.find_order(order_id, venue_id)
            if current is None:
                raise NotFoundError("Order not found")
            raise PreconditionError(
                f"order {order_id} moved to {current.status.value} before cancel",
                PreconditionError.ALREADY_ACCEPTED
            )

        orders_cancelled_total.inc()
        logger.info(
            "order_cancelled",
            order_id=order_id,
            venue_id=venue_id,
            customer_name=customer_name
        )

        self._notify(venue_id, EventType.ORDER_DELETED, orderId=order_id)
        return order

    # ========================================================================
    # READ QUERIES
    # ========================================================================

    async def list_orders(
        self,
        venue_id: Any,
        status: Optional[Any] = None,
        customer_name: Optional[str] = None,
        limit: Any = DEFAULT_LIST_LIMIT
    ) -> OrderResult[List[Order]]:
        """Orders of a venue, newest first, optionally filtered."""
        try:
            venue_id = _require_id(venue_id, "venueId")
            status_filter = parse_status(status) if status else None
            limit = _require_id(limit, "limit")
            orders = await self.store.list_orders(
                venue_id,
                status=status_filter,
                customer_name=customer_name or None,
                limit=min(limit, MAX_LIST_LIMIT)
            )
        except OrderError as e:
            return self._failed("list", e)
        return OrderResult.success(orders)

    async def pending_orders(self, venue_id: Any) -> OrderResult[List[Order]]:
        """Active orders of a venue, oldest first (the bartender queue)."""
        try:
            venue_id = _require_id(venue_id, "venueId")
            orders = await self.store.list_active_orders(venue_id)
        except OrderError as e:
            return self._failed("pending", e)
        return OrderResult.success(orders)

    async def current_order(self, venue_id: Any, customer_name: Any) -> OrderResult[Optional[Order]]:
        """The guest's active order, or None."""
        try:
            venue_id = _require_id(venue_id, "venueId")
            customer_name = _require_text(customer_name, "customerName")
            order = await self.store.find_active_order(venue_id, customer_name)
        except OrderError as e:
            return self._failed("current", e)
        return OrderResult.success(order)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _failed(self, operation: str, error: OrderError) -> OrderResult:
        order_operation_failures_total.labels(operation=operation, kind=error.kind).inc()

        if isinstance(error, StoreError):
            logger.error("order_store_failure", operation=operation, error=error.message)
        else:
            logger.info(
                "order_operation_rejected",
                operation=operation,
                kind=error.kind,
                reason=error.message
            )

        return OrderResult.failure(error)

    def _notify(self, venue_id: int, event_type: EventType, **payload) -> None:
        """Hand an event to the broadcaster; delivery problems never fail the operation."""
        try:
            self.broadcaster.publish_to_venue(venue_id, event_type, **payload)
        except Exception as e:
            logger.error(
                "order_event_publish_failed",
                venue_id=venue_id,
                event_type=event_type.value,
                error=str(e),
                exc_info=True
            )
