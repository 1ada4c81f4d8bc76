"""
Order Store
===========
Persistence boundary for venues, drinks and orders.

Two implementations share the ``OrderStore`` interface:
- SupabaseOrderStore: Postgres via Supabase, with timeouts and a circuit breaker
- MemoryOrderStore: process-local, for development and tests

Every order write is a single conditional statement, so concurrent requests
can never both succeed off a stale status read.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from supabase import create_client, Client
from postgrest.exceptions import APIError

from errors import ConflictError, StoreError
from order import Order
from order_state import ACTIVE_STATUSES, OrderStatus, is_active


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_LIST_LIMIT = 100

# Postgres unique_violation; raised by the one-active-order partial index
UNIQUE_VIOLATION = "23505"

_ACTIVE_STATUS_VALUES = sorted(status.value for status in ACTIVE_STATUSES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# REFERENCE DATA
# ============================================================================

@dataclass(frozen=True)
class Venue:
    """A bar (tenant). Read-only from the order core's point of view."""
    id: int
    name: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Venue":
        return cls(id=int(row["id"]), name=row.get("name") or "")


@dataclass(frozen=True)
class Drink:
    """A menu item of one venue."""
    id: int
    venue_id: int
    title: str
    in_stock: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Drink":
        return cls(
            id=int(row["id"]),
            venue_id=int(row["venue_id"]),
            title=row.get("title") or "",
            in_stock=bool(row.get("in_stock", True)),
        )


# ============================================================================
# STORE INTERFACE
# ============================================================================

class OrderStore(ABC):
    """Contract for venue/drink lookups and order persistence."""

    @abstractmethod
    async def find_venue(self, venue_id: int) -> Optional[Venue]:
        """Return the venue, or None."""

    @abstractmethod
    async def find_drink(self, drink_id: int, venue_id: int) -> Optional[Drink]:
        """Return the drink if it exists and belongs to the venue."""

    @abstractmethod
    async def find_active_order(self, venue_id: int, customer_name: str) -> Optional[Order]:
        """Return the guest's order in new/accepted/ready, or None."""

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        """
        Persist a new order and return it with its assigned id.

        Raises:
            ConflictError: If the guest already has an active order
        """

    @abstractmethod
    async def find_order(self, order_id: int, venue_id: int) -> Optional[Order]:
        """Return the order if it exists under this venue."""

    @abstractmethod
    async def update_order_status(
        self,
        order_id: int,
        venue_id: int,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        updated_at: datetime
    ) -> Optional[Order]:
        """
        Set the status only if the stored status still equals ``expected_status``.

        Returns:
            The updated order, or None if no row matched
        """

    @abstractmethod
    async def delete_order(
        self,
        order_id: int,
        venue_id: int,
        expected_status: Optional[OrderStatus] = None
    ) -> bool:
        """Delete the order (optionally only while in ``expected_status``)."""

    @abstractmethod
    async def list_orders(
        self,
        venue_id: int,
        status: Optional[OrderStatus] = None,
        customer_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Order]:
        """Orders of a venue, newest first."""

    @abstractmethod
    async def list_active_orders(self, venue_id: int) -> List[Order]:
        """Active orders of a venue, oldest first."""

    async def ping(self) -> bool:
        """Check the store answers."""
        return True

    def is_healthy(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {}

    async def close(self) -> None:
        """Release resources."""


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0
        self._clock = clock

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            self.success_count = 0
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (self._clock() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests through
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


# ============================================================================
# SUPABASE STORE
# ============================================================================

class SupabaseOrderStore(OrderStore):
    """
    Order store backed by Supabase (Postgres).

    The Supabase client is synchronous; every call runs in the default
    executor under ``asyncio.wait_for`` so it never blocks other connections.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[Client] = None
    ):
        self.timeout = timeout
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        if client is not None:
            self.client = client
        else:
            if not url or not key:
                raise StoreError("SUPABASE_URL and SUPABASE_KEY required")
            self.client = create_client(url, key)

        logger.info("SupabaseOrderStore initialized")

    async def _execute(self, operation: str, query: Callable[[], Any], write: bool = False) -> Any:
        """
        Run one blocking Supabase query with timeout and circuit breaker.

        Raises:
            ConflictError: On a unique violation (active order already exists)
            StoreError: On any other failure; the cause is logged only
        """
        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, rejecting {operation}")
            raise StoreError(f"{operation}: circuit breaker open")

        loop = asyncio.get_running_loop()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, query),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            logger.error(f"{operation} timed out after {self.timeout}s")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"{operation}: timeout")

        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                self.circuit_breaker.record_success()
                raise ConflictError("active order exists")
            logger.error(f"{operation} failed: {e.message} (code={e.code})")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"{operation}: database error") from e

        except Exception as e:
            logger.error(f"{operation} failed: {str(e)}", exc_info=True)
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"{operation}: unexpected failure") from e

        self.circuit_breaker.record_success()
        if write:
            self.write_count += 1
        else:
            self.read_count += 1

        return result.data or []

    def _orders(self):
        return self.client.table("orders")

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def find_venue(self, venue_id: int) -> Optional[Venue]:
        rows = await self._execute(
            "find_venue",
            lambda: self.client
                .table("venues")
                .select("id, name")
                .eq("id", venue_id)
                .limit(1)
                .execute()
        )
        return Venue.from_row(rows[0]) if rows else None

    async def find_drink(self, drink_id: int, venue_id: int) -> Optional[Drink]:
        rows = await self._execute(
            "find_drink",
            lambda: self.client
                .table("drinks")
                .select("id, venue_id, title, in_stock")
                .eq("id", drink_id)
                .eq("venue_id", venue_id)
                .limit(1)
                .execute()
        )
        return Drink.from_row(rows[0]) if rows else None

    async def find_active_order(self, venue_id: int, customer_name: str) -> Optional[Order]:
        rows = await self._execute(
            "find_active_order",
            lambda: self._orders()
                .select("*")
                .eq("venue_id", venue_id)
                .eq("customer_name", customer_name)
                .in_("status", _ACTIVE_STATUS_VALUES)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
        )
        return Order.from_row(rows[0]) if rows else None

    async def find_order(self, order_id: int, venue_id: int) -> Optional[Order]:
        rows = await self._execute(
            "find_order",
            lambda: self._orders()
                .select("*")
                .eq("id", order_id)
                .eq("venue_id", venue_id)
                .limit(1)
                .execute()
        )
        return Order.from_row(rows[0]) if rows else None

    async def list_orders(
        self,
        venue_id: int,
        status: Optional[OrderStatus] = None,
        customer_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Order]:
        def query():
            builder = self._orders().select("*").eq("venue_id", venue_id)
            if status is not None:
                builder = builder.eq("status", status.value)
            if customer_name is not None:
                builder = builder.eq("customer_name", customer_name)
            return builder.order("created_at", desc=True).limit(limit).execute()

        rows = await self._execute("list_orders", query)
        return [Order.from_row(row) for row in rows]

    async def list_active_orders(self, venue_id: int) -> List[Order]:
        rows = await self._execute(
            "list_active_orders",
            lambda: self._orders()
                .select("*")
                .eq("venue_id", venue_id)
                .in_("status", _ACTIVE_STATUS_VALUES)
                .order("created_at")
                .execute()
        )
        return [Order.from_row(row) for row in rows]

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def insert_order(self, order: Order) -> Order:
        row = order.to_row()
        rows = await self._execute(
            "insert_order",
            lambda: self._orders().insert(row).execute(),
            write=True
        )
        if not rows:
            raise StoreError("insert_order: no row returned")
        return Order.from_row(rows[0])

    async def update_order_status(
        self,
        order_id: int,
        venue_id: int,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        updated_at: datetime
    ) -> Optional[Order]:
        rows = await self._execute(
            "update_order_status",
            lambda: self._orders()
                .update({
                    "status": new_status.value,
                    "updated_at": updated_at.isoformat()
                })
                .eq("id", order_id)
                .eq("venue_id", venue_id)
                .eq("status", expected_status.value)
                .execute(),
            write=True
        )
        return Order.from_row(rows[0]) if rows else None

    async def delete_order(
        self,
        order_id: int,
        venue_id: int,
        expected_status: Optional[OrderStatus] = None
    ) -> bool:
        def query():
            builder = self._orders().delete().eq("id", order_id).eq("venue_id", venue_id)
            if expected_status is not None:
                builder = builder.eq("status", expected_status.value)
            return builder.execute()

        rows = await self._execute("delete_order", query, write=True)
        return len(rows) > 0

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    async def ping(self) -> bool:
        try:
            await self._execute(
                "ping",
                lambda: self.client.table("venues").select("id").limit(1).execute()
            )
            return True
        except StoreError:
            return False

    def is_healthy(self) -> bool:
        return self.circuit_breaker.state != CircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "supabase",
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class MemoryOrderStore(OrderStore):
    """
    Process-local order store.

    Methods never await between their read and their write, so each call
    is atomic on the event loop.
    """

    def __init__(self):
        self._venues: Dict[int, Venue] = {}
        self._drinks: Dict[int, Drink] = {}
        self._orders: Dict[int, Order] = {}
        self._order_ids = itertools.count(1)
        self._drink_ids = itertools.count(1)

    # Seeding helpers
    def add_venue(self, venue_id: int, name: str = "") -> Venue:
        venue = Venue(id=venue_id, name=name)
        self._venues[venue_id] = venue
        return venue

    def add_drink(
        self,
        venue_id: int,
        title: str,
        in_stock: bool = True,
        drink_id: Optional[int] = None
    ) -> Drink:
        drink = Drink(
            id=drink_id if drink_id is not None else next(self._drink_ids),
            venue_id=venue_id,
            title=title,
            in_stock=in_stock
        )
        self._drinks[drink.id] = drink
        return drink

    def set_in_stock(self, drink_id: int, in_stock: bool) -> None:
        drink = self._drinks[drink_id]
        self._drinks[drink_id] = Drink(drink.id, drink.venue_id, drink.title, in_stock)

    async def find_venue(self, venue_id: int) -> Optional[Venue]:
        return self._venues.get(venue_id)

    async def find_drink(self, drink_id: int, venue_id: int) -> Optional[Drink]:
        drink = self._drinks.get(drink_id)
        if drink is None or drink.venue_id != venue_id:
            return None
        return drink

    def _active_order(self, venue_id: int, customer_name: str) -> Optional[Order]:
        for order in sorted(self._orders.values(), key=lambda o: o.id, reverse=True):
            if (
                order.venue_id == venue_id
                and order.customer_name == customer_name
                and is_active(order.status)
            ):
                return order
        return None

    async def find_active_order(self, venue_id: int, customer_name: str) -> Optional[Order]:
        return self._active_order(venue_id, customer_name)

    async def insert_order(self, order: Order) -> Order:
        # Mirrors the partial unique index in schema.sql
        if is_active(order.status) and self._active_order(order.venue_id, order.customer_name):
            raise ConflictError("active order exists")

        stored = order.with_id(next(self._order_ids))
        self._orders[stored.id] = stored
        return stored

    async def find_order(self, order_id: int, venue_id: int) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None or order.venue_id != venue_id:
            return None
        return order

    async def update_order_status(
        self,
        order_id: int,
        venue_id: int,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        updated_at: datetime
    ) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None or order.venue_id != venue_id or order.status != expected_status:
            return None

        updated = order.with_status(new_status, updated_at)
        self._orders[order_id] = updated
        return updated

    async def delete_order(
        self,
        order_id: int,
        venue_id: int,
        expected_status: Optional[OrderStatus] = None
    ) -> bool:
        order = self._orders.get(order_id)
        if order is None or order.venue_id != venue_id:
            return False
        if expected_status is not None and order.status != expected_status:
            return False

        del self._orders[order_id]
        return True

    async def list_orders(
        self,
        venue_id: int,
        status: Optional[OrderStatus] = None,
        customer_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Order]:
        orders = [
            order for order in self._orders.values()
            if order.venue_id == venue_id
            and (status is None or order.status == status)
            and (customer_name is None or order.customer_name == customer_name)
        ]
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return orders[:limit]

    async def list_active_orders(self, venue_id: int) -> List[Order]:
        orders = [
            order for order in self._orders.values()
            if order.venue_id == venue_id and is_active(order.status)
        ]
        orders.sort(key=lambda o: (o.created_at, o.id))
        return orders

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "venues": len(self._venues),
            "drinks": len(self._drinks),
            "orders": len(self._orders)
        }


# ============================================================================
# FACTORY
# ============================================================================

def create_store(store_config) -> OrderStore:
    """Build the store selected by ``config.StoreConfig``."""
    if store_config.backend == "memory":
        logger.warning("Using in-memory order store; orders are lost on restart")
        return MemoryOrderStore()

    return SupabaseOrderStore(
        url=store_config.supabase_url,
        key=store_config.supabase_key,
        timeout=store_config.timeout
    )
