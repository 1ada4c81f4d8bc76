"""
Realtime Gateway
================
Connection-handling layer between the transport and the registry.

Inbound messages (JSON objects with a ``type`` field):
    join_bar   {venueId, role, customerName?}   -> bar_joined
    leave_bar  {}                               -> bar_left
    ping       {}                               -> pong
    get_stats  {}                               -> stats (bartenders only)

Replies go through the broadcaster queue, so a connection sees its replies
and venue events in one order.

NO TRANSPORT CODE - the socket lives in websocket_server.
"""

import json
from typing import Any, Dict, Optional, Union

import structlog

from broadcaster import EventType, NotificationBroadcaster
from errors import OrderError
from registry import ConnectionInfo, Role, SubscriptionRegistry

logger = structlog.get_logger(__name__)


class RealtimeGateway:
    """Dispatches inbound messages and keeps bartenders told about guests."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        broadcaster: NotificationBroadcaster,
        store=None
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.store = store

        self._handlers = {
            "join_bar": self._handle_join_bar,
            "leave_bar": self._handle_leave_bar,
            "ping": self._handle_ping,
            "get_stats": self._handle_get_stats,
        }

    # ========================================================================
    # CONNECTION LIFECYCLE
    # ========================================================================

    def connect(self, channel: Any) -> int:
        """Register a new connection and greet it."""
        connection_id = self.registry.register(channel)
        self._reply(connection_id, EventType.CONNECTION_ESTABLISHED, clientId=connection_id)
        return connection_id

    def disconnect(self, connection_id: int) -> Optional[ConnectionInfo]:
        """Forget a closed connection. Safe to call for ids already removed."""
        info = self.registry.unregister(connection_id)
        if info is not None:
            self.on_connection_lost(info)
        return info

    def on_connection_lost(self, info: ConnectionInfo) -> None:
        """
        Tell the venue's bartenders that a guest went away.

        Also wired as the broadcaster's drop hook and the liveness
        monitor's eviction hook.
        """
        if info.venue_id is None or not info.is_guest or not info.customer_name:
            return

        self.broadcaster.publish_to_role(
            info.venue_id,
            Role.BARTENDER,
            EventType.GUEST_DISCONNECTED,
            customerName=info.customer_name
        )

    # ========================================================================
    # INBOUND DISPATCH
    # ========================================================================

    async def handle_inbound_message(
        self,
        connection_id: int,
        raw: Union[str, bytes, Dict[str, Any]]
    ) -> None:
        """Parse one inbound frame and dispatch it on its ``type``."""
        if self.registry.get(connection_id) is None:
            return

        message = self._parse(raw)
        if message is None:
            logger.info("inbound_message_malformed", connection_id=connection_id)
            self._error(connection_id, "invalid message format")
            return

        message_type = message.get("type")
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.info("inbound_message_unknown", connection_id=connection_id, message_type=message_type)
            self._error(connection_id, f"Unknown message type: {message_type}")
            return

        await handler(connection_id, message)

    @staticmethod
    def _parse(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if isinstance(raw, dict):
            return raw
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return message if isinstance(message, dict) else None

    # ========================================================================
    # HANDLERS
    # ========================================================================

    async def _handle_join_bar(self, connection_id: int, message: Dict[str, Any]) -> None:
        # barId / userType are the names older clients send
        raw_venue = message.get("venueId", message.get("barId"))
        raw_role = message.get("role", message.get("userType"))

        if raw_venue in (None, "") or not raw_role:
            self._error(connection_id, "venueId and role are required to join a bar")
            return

        if isinstance(raw_venue, bool) or (isinstance(raw_venue, float) and not raw_venue.is_integer()):
            venue_id = 0
        else:
            try:
                venue_id = int(raw_venue)
            except (TypeError, ValueError, OverflowError):
                venue_id = 0
        if venue_id <= 0:
            self._error(connection_id, "venueId must be a positive integer")
            return

        try:
            role = Role(raw_role)
        except ValueError:
            self._error(connection_id, "role must be 'bartender' or 'guest'")
            return

        customer_name = message.get("customerName")
        if isinstance(customer_name, str):
            customer_name = customer_name.strip()
        if role == Role.GUEST and not (isinstance(customer_name, str) and customer_name):
            self._error(connection_id, "customerName is required for guests")
            return

        if self.store is not None:
            try:
                venue = await self.store.find_venue(venue_id)
            except OrderError as e:
                logger.error("join_venue_lookup_failed", connection_id=connection_id, venue_id=venue_id, error=e.message)
                self._error(connection_id, e.user_message)
                return
            if venue is None:
                self._error(connection_id, "Venue not found")
                return

        info = self.registry.join(connection_id, venue_id, role, customer_name)
        if info is None:
            # Closed while the venue was being looked up
            return

        logger.info(
            "bar_joined",
            connection_id=connection_id,
            venue_id=venue_id,
            role=role.value,
            customer_name=info.customer_name
        )

        self._reply(
            connection_id,
            EventType.BAR_JOINED,
            venueId=venue_id,
            role=role.value,
            customerName=info.customer_name
        )

        if info.is_guest:
            self.broadcaster.publish_to_role(
                venue_id,
                Role.BARTENDER,
                EventType.GUEST_CONNECTED,
                customerName=info.customer_name,
                connectionCount=len(self.registry.query_by_venue(venue_id))
            )

    async def _handle_leave_bar(self, connection_id: int, message: Dict[str, Any]) -> None:
        before = self.registry.leave(connection_id)

        if before is not None and before.joined:
            logger.info("bar_left", connection_id=connection_id, venue_id=before.venue_id)

        self._reply(connection_id, EventType.BAR_LEFT)

        if before is not None:
            self.on_connection_lost(before)

    async def _handle_ping(self, connection_id: int, message: Dict[str, Any]) -> None:
        self.registry.touch_liveness(connection_id)
        self._reply(connection_id, EventType.PONG)

    async def _handle_get_stats(self, connection_id: int, message: Dict[str, Any]) -> None:
        info = self.registry.get(connection_id)
        if info is None or info.role != Role.BARTENDER:
            return

        self._reply(connection_id, EventType.STATS, data=self.registry.venue_stats(info.venue_id))

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _reply(self, connection_id: int, event_type: EventType, **payload) -> None:
        self.broadcaster.publish_to_connection(connection_id, event_type, **payload)

    def _error(self, connection_id: int, message: str) -> None:
        self._reply(connection_id, EventType.ERROR, message=message)
