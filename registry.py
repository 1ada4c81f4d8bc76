"""
Subscription Registry
=====================
Owns the affiliation record (venue, role, customer) of every live connection.

The underlying map is never handed out. Callers get frozen ConnectionInfo
snapshots and sets of connection ids; every mutation goes through a method
below and runs under one lock.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Union

from prometheus_client import Gauge

logger = logging.getLogger(__name__)


connections_active = Gauge(
    'realtime_connections_active',
    'Currently registered realtime connections'
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Who is on the other end of a connection."""
    BARTENDER = "bartender"
    GUEST = "guest"


@dataclass(frozen=True)
class ConnectionInfo:
    """Read-only view of one connection record."""
    connection_id: int
    venue_id: Optional[int]
    role: Optional[Role]
    customer_name: Optional[str]
    connected_at: datetime
    last_liveness_ack: datetime

    @property
    def joined(self) -> bool:
        return self.venue_id is not None

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST


@dataclass
class _ConnectionRecord:
    connection_id: int
    channel: Any
    connected_at: datetime
    last_liveness_ack: datetime
    venue_id: Optional[int] = None
    role: Optional[Role] = None
    customer_name: Optional[str] = None

    def snapshot(self) -> ConnectionInfo:
        return ConnectionInfo(
            connection_id=self.connection_id,
            venue_id=self.venue_id,
            role=self.role,
            customer_name=self.customer_name,
            connected_at=self.connected_at,
            last_liveness_ack=self.last_liveness_ack,
        )


class SubscriptionRegistry:
    """
    Process-wide table of live connections.

    Operations are synchronous and never await, so they are atomic on the
    event loop; the lock also covers calls from executor threads.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._records: Dict[int, _ConnectionRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def register(self, channel: Any, connection_id: Optional[int] = None) -> int:
        """Create an unaffiliated record for a new connection and return its id."""
        now = self._clock()
        with self._lock:
            if connection_id is None:
                connection_id = next(self._ids)
            if connection_id in self._records:
                raise ValueError(f"Connection {connection_id} already registered")

            self._records[connection_id] = _ConnectionRecord(
                connection_id=connection_id,
                channel=channel,
                connected_at=now,
                last_liveness_ack=now,
            )
            total = len(self._records)

        connections_active.inc()
        logger.info(f"Connection {connection_id} registered. Total connections: {total}")
        return connection_id

    def join(
        self,
        connection_id: int,
        venue_id: int,
        role: Union[Role, str],
        customer_name: Optional[str] = None
    ) -> Optional[ConnectionInfo]:
        """
        Affiliate a connection with a venue.

        ``customer_name`` is kept only for guests and is required for them.

        Returns:
            The updated record, or None if the connection is unknown

        Raises:
            ValueError: On an unknown role or a guest without a name
        """
        role = Role(role)
        if role == Role.GUEST:
            if not customer_name:
                raise ValueError("customer_name is required for guests")
        else:
            customer_name = None

        with self._lock:
            record = self._records.get(connection_id)
            if record is None:
                return None
            record.venue_id = venue_id
            record.role = role
            record.customer_name = customer_name
            return record.snapshot()

    def leave(self, connection_id: int) -> Optional[ConnectionInfo]:
        """
        Clear the affiliation but keep the connection registered.

        Returns:
            The record as it was before leaving, or None if unknown
        """
        with self._lock:
            record = self._records.get(connection_id)
            if record is None:
                return None
            before = record.snapshot()
            record.venue_id = None
            record.role = None
            record.customer_name = None
            return before

    def unregister(self, connection_id: int) -> Optional[ConnectionInfo]:
        """
        Remove a connection entirely. Idempotent.

        Returns:
            The removed record, or None if it was already gone
        """
        with self._lock:
            record = self._records.pop(connection_id, None)
            total = len(self._records)

        if record is None:
            return None

        connections_active.dec()
        logger.info(f"Connection {connection_id} unregistered. Total connections: {total}")
        return record.snapshot()

    def touch_liveness(self, connection_id: int) -> None:
        """Record that the peer just proved it is alive."""
        now = self._clock()
        with self._lock:
            record = self._records.get(connection_id)
            if record is not None:
                record.last_liveness_ack = now

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get(self, connection_id: int) -> Optional[ConnectionInfo]:
        with self._lock:
            record = self._records.get(connection_id)
            return record.snapshot() if record else None

    def channel_for(self, connection_id: int) -> Optional[Any]:
        """Transport handle of a connection, for delivery only."""
        with self._lock:
            record = self._records.get(connection_id)
            return record.channel if record else None

    def connection_ids(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._records)

    def query_by_venue(self, venue_id: int) -> FrozenSet[int]:
        with self._lock:
            return frozenset(
                cid for cid, r in self._records.items()
                if r.venue_id == venue_id
            )

    def query_by_venue_and_role(self, venue_id: int, role: Union[Role, str]) -> FrozenSet[int]:
        role = Role(role)
        with self._lock:
            return frozenset(
                cid for cid, r in self._records.items()
                if r.venue_id == venue_id and r.role == role
            )

    def query_by_venue_and_customer(self, venue_id: int, customer_name: str) -> FrozenSet[int]:
        with self._lock:
            return frozenset(
                cid for cid, r in self._records.items()
                if r.venue_id == venue_id and r.customer_name == customer_name
            )

    def all_stale(self, now: datetime, timeout: Union[float, timedelta]) -> FrozenSet[int]:
        """Connections whose last liveness ack is older than ``timeout``."""
        if not isinstance(timeout, timedelta):
            timeout = timedelta(seconds=timeout)
        cutoff = now - timeout
        with self._lock:
            return frozenset(
                cid for cid, r in self._records.items()
                if r.last_liveness_ack < cutoff
            )

    def venue_stats(self, venue_id: int) -> Dict[str, Any]:
        """Connection counts and guest names for one venue."""
        stats = {
            "totalConnections": 0,
            "bartenders": 0,
            "guests": 0,
            "guestNames": [],
        }
        with self._lock:
            records = sorted(
                (r.snapshot() for r in self._records.values()),
                key=lambda r: r.connection_id
            )

        for record in records:
            if record.venue_id != venue_id:
                continue
            stats["totalConnections"] += 1
            if record.role == Role.BARTENDER:
                stats["bartenders"] += 1
            elif record.role == Role.GUEST:
                stats["guests"] += 1
                if record.customer_name:
                    stats["guestNames"].append(record.customer_name)

        return stats

    def get_stats(self) -> Dict[str, Any]:
        """Process-wide connection counts."""
        by_venue: Dict[str, int] = {}
        by_role = {Role.BARTENDER.value: 0, Role.GUEST.value: 0, "unknown": 0}

        with self._lock:
            records = [r.snapshot() for r in self._records.values()]

        for record in records:
            if record.venue_id is not None:
                key = str(record.venue_id)
                by_venue[key] = by_venue.get(key, 0) + 1
            if record.role is not None:
                by_role[record.role.value] += 1
            else:
                by_role["unknown"] += 1

        return {
            "totalConnections": len(records),
            "connectionsByVenue": by_venue,
            "connectionsByRole": by_role,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __repr__(self):
        return f"<SubscriptionRegistry connections={len(self)}>"
