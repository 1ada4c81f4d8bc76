"""
Notification Broadcaster
========================
Venue-scoped fan-out of events to live connections.

publish_*   enqueue and return immediately (callers never wait on delivery)
broadcast_* deliver now and report how many connections received the event

A single dispatch worker drains the publish queue and routes each event to
per-connection outboxes. Every outbox has its own sender task, so events
reach any one connection in the order they were published while a slow or
dead peer only ever holds up itself. A connection whose send fails or times
out is dropped from the registry.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from prometheus_client import Counter

from registry import ConnectionInfo, Role, SubscriptionRegistry

logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

events_published_total = Counter(
    'realtime_events_published_total',
    'Events handed to the broadcaster',
    ['event_type']
)
delivery_failures_total = Counter(
    'realtime_delivery_failures_total',
    'Sends that failed and dropped the connection'
)


DEFAULT_SEND_TIMEOUT = 5.0  # seconds
CLOSE_TIMEOUT = 2.0  # seconds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """Outbound message types."""
    NEW_ORDER = "new_order"
    ORDER_STATUS_UPDATED = "order_status_updated"
    ORDER_DELETED = "order_deleted"
    GUEST_CONNECTED = "guest_connected"
    GUEST_DISCONNECTED = "guest_disconnected"
    BAR_JOINED = "bar_joined"
    BAR_LEFT = "bar_left"
    STATS = "stats"
    PONG = "pong"
    ERROR = "error"
    CONNECTION_ESTABLISHED = "connection_established"


def build_event(event_type: Union[EventType, str], **payload) -> Dict[str, Any]:
    """Event body without the delivery timestamp."""
    return {"type": EventType(event_type).value, **payload}


@dataclass(frozen=True)
class _Dispatch:
    scope: str
    event: Dict[str, Any]
    venue_id: Optional[int] = None
    role: Optional[Role] = None
    customer_name: Optional[str] = None
    connection_id: Optional[int] = None
    queued_at: datetime = field(default_factory=_utcnow)


@dataclass
class _Outbox:
    """Pending sends of one connection, drained by its own sender task."""
    channel: Any
    pending: Deque[Tuple[Dict[str, Any], "asyncio.Future"]] = field(default_factory=deque)
    task: Optional[asyncio.Task] = None


class NotificationBroadcaster:
    """Delivers events to exactly the connections a scope selects."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_drop: Optional[Callable[[ConnectionInfo], None]] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.registry = registry
        self.send_timeout = send_timeout
        self.on_drop = on_drop
        self._clock = clock

        self._queue: "asyncio.Queue[_Dispatch]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._outboxes: Dict[int, _Outbox] = {}
        self.is_running = False

        # Stats
        self.delivered_count = 0
        self.failed_count = 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start the dispatch worker."""
        if self.is_running:
            return

        self.is_running = True
        self._worker = asyncio.create_task(self._dispatch_loop())
        logger.info("broadcaster_started")

    async def stop(self, drain_timeout: float = 5.0):
        """Deliver what is queued (bounded by ``drain_timeout``), then stop the worker and senders."""
        if not self.is_running:
            return

        try:
            await asyncio.wait_for(self.drain(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "broadcaster_drain_timeout",
                pending=self._queue.qsize(),
                outboxes=len(self._outboxes)
            )

        self.is_running = False

        tasks = [outbox.task for outbox in self._outboxes.values() if outbox.task]
        if self._worker and not self._worker.done():
            tasks.append(self._worker)

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._outboxes.clear()
        logger.info("broadcaster_stopped")

    async def drain(self):
        """Wait until every queued event has been sent, or has failed, on every connection."""
        while True:
            if self.is_running:
                await self._queue.join()
            else:
                while not self._queue.empty():
                    dispatch = self._queue.get_nowait()
                    try:
                        self._dispatch(dispatch)
                    finally:
                        self._queue.task_done()

            senders = [outbox.task for outbox in self._outboxes.values() if outbox.task]
            if not senders:
                if self._queue.empty():
                    return
                continue

            # Drop hooks may publish more while these finish
            await asyncio.gather(*senders, return_exceptions=True)

    async def _dispatch_loop(self):
        """Background loop: route one dispatch at a time, in publish order."""
        while True:
            dispatch = await self._queue.get()
            try:
                self._dispatch(dispatch)
            except Exception as e:
                logger.error(
                    "dispatch_failed",
                    scope=dispatch.scope,
                    event_type=dispatch.event.get("type"),
                    error=str(e),
                    exc_info=True
                )
            finally:
                self._queue.task_done()

    def _dispatch(self, dispatch: _Dispatch) -> List["asyncio.Future"]:
        if dispatch.scope == "venue":
            targets = self.registry.query_by_venue(dispatch.venue_id)
        elif dispatch.scope == "role":
            targets = self.registry.query_by_venue_and_role(dispatch.venue_id, dispatch.role)
        elif dispatch.scope == "customer":
            targets = self.registry.query_by_venue_and_customer(dispatch.venue_id, dispatch.customer_name)
        else:
            targets = frozenset({dispatch.connection_id})
        return self._route(targets, dispatch.event)

    # ========================================================================
    # PUBLISH (fire-and-forget)
    # ========================================================================

    def _enqueue(self, dispatch: _Dispatch) -> None:
        events_published_total.labels(event_type=dispatch.event["type"]).inc()
        self._queue.put_nowait(dispatch)

    def publish_to_venue(self, venue_id: int, event_type: Union[EventType, str], **payload) -> None:
        self._enqueue(_Dispatch(
            scope="venue",
            event=build_event(event_type, **payload),
            venue_id=venue_id
        ))

    def publish_to_role(
        self,
        venue_id: int,
        role: Union[Role, str],
        event_type: Union[EventType, str],
        **payload
    ) -> None:
        self._enqueue(_Dispatch(
            scope="role",
            event=build_event(event_type, **payload),
            venue_id=venue_id,
            role=Role(role)
        ))

    def publish_to_customer(
        self,
        venue_id: int,
        customer_name: str,
        event_type: Union[EventType, str],
        **payload
    ) -> None:
        self._enqueue(_Dispatch(
            scope="customer",
            event=build_event(event_type, **payload),
            venue_id=venue_id,
            customer_name=customer_name
        ))

    def publish_to_connection(
        self,
        connection_id: int,
        event_type: Union[EventType, str],
        **payload
    ) -> None:
        self._enqueue(_Dispatch(
            scope="connection",
            event=build_event(event_type, **payload),
            connection_id=connection_id
        ))

    # ========================================================================
    # BROADCAST (awaitable)
    # ========================================================================

    async def broadcast_to_venue(self, venue_id: int, event: Dict[str, Any]) -> int:
        targets = self.registry.query_by_venue(venue_id)
        sent = await self._deliver(targets, event)
        logger.debug(
            "broadcast_venue",
            venue_id=venue_id,
            event_type=event.get("type"),
            sent=sent,
            targets=len(targets)
        )
        return sent

    async def broadcast_to_role(
        self,
        venue_id: int,
        role: Union[Role, str],
        event: Dict[str, Any]
    ) -> int:
        role = Role(role)
        targets = self.registry.query_by_venue_and_role(venue_id, role)
        sent = await self._deliver(targets, event)
        logger.debug(
            "broadcast_role",
            venue_id=venue_id,
            role=role.value,
            event_type=event.get("type"),
            sent=sent,
            targets=len(targets)
        )
        return sent

    async def broadcast_to_customer(
        self,
        venue_id: int,
        customer_name: str,
        event: Dict[str, Any]
    ) -> int:
        targets = self.registry.query_by_venue_and_customer(venue_id, customer_name)
        sent = await self._deliver(targets, event)
        logger.debug(
            "broadcast_customer",
            venue_id=venue_id,
            customer_name=customer_name,
            event_type=event.get("type"),
            sent=sent,
            targets=len(targets)
        )
        return sent

    async def send_to(self, connection_id: int, event: Dict[str, Any]) -> bool:
        """Deliver to one connection."""
        return await self._deliver([connection_id], event) == 1

    # ========================================================================
    # DELIVERY
    # ========================================================================

    async def _deliver(self, targets: Iterable[int], event: Dict[str, Any]) -> int:
        waiters = self._route(targets, event)
        if not waiters:
            return 0
        results = await asyncio.gather(*waiters)
        return sum(1 for ok in results if ok)

    def _route(self, targets: Iterable[int], event: Dict[str, Any]) -> List["asyncio.Future"]:
        """Stamp the event and append it to each target's outbox."""
        message = {**event, "deliveredAt": self._clock().isoformat()}
        loop = asyncio.get_running_loop()
        waiters = []

        for connection_id in sorted(targets):
            channel = self.registry.channel_for(connection_id)
            if channel is None:
                # Disconnected since the target set was resolved
                continue

            outbox = self._outboxes.get(connection_id)
            if outbox is None:
                outbox = self._outboxes[connection_id] = _Outbox(channel=channel)
                outbox.task = asyncio.create_task(self._send_loop(connection_id, outbox))

            waiter = loop.create_future()
            outbox.pending.append((message, waiter))
            waiters.append(waiter)

        return waiters

    async def _send_loop(self, connection_id: int, outbox: _Outbox):
        """Send one connection's events in order until its outbox is empty."""
        try:
            while outbox.pending:
                message, waiter = outbox.pending.popleft()
                try:
                    await asyncio.wait_for(outbox.channel.send_json(message), timeout=self.send_timeout)
                except Exception as e:
                    _resolve(waiter, False)
                    await self._drop(connection_id, outbox.channel, e)
                    return

                self.delivered_count += 1
                _resolve(waiter, True)
        finally:
            for _, waiter in outbox.pending:
                _resolve(waiter, False)
            outbox.pending.clear()
            if self._outboxes.get(connection_id) is outbox:
                del self._outboxes[connection_id]

    async def _drop(self, connection_id: int, channel: Any, error: Exception) -> None:
        """Remove a peer whose send failed."""
        self.failed_count += 1
        delivery_failures_total.inc()

        info = self.registry.unregister(connection_id)
        logger.warning(
            "delivery_failed_connection_dropped",
            connection_id=connection_id,
            error=repr(error)
        )

        try:
            await asyncio.wait_for(channel.close(1011, "delivery failed"), timeout=CLOSE_TIMEOUT)
        except Exception as e:
            logger.debug("close_after_failure_failed", connection_id=connection_id, error=repr(e))

        if info is not None and self.on_drop is not None:
            try:
                self.on_drop(info)
            except Exception as e:
                logger.error("on_drop_failed", connection_id=connection_id, error=str(e), exc_info=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "queued": self._queue.qsize(),
            "outboxes": len(self._outboxes),
            "delivered": self.delivered_count,
            "failed": self.failed_count,
        }


def _resolve(waiter: "asyncio.Future", ok: bool) -> None:
    if not waiter.done():
        waiter.set_result(ok)
