"""
WebSocket Realtime Server
=========================
Transport for bartender dashboards and guest sessions.

Runs the ``websockets`` asyncio server on its own port so the liveness
monitor can use protocol-level ping/pong. Frames are handed to the
RealtimeGateway unchanged.

NO BUSINESS LOGIC - Pure connection plumbing only.
"""

import asyncio
import json
from http import HTTPStatus
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import structlog
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError

from gateway import RealtimeGateway
from log_config import add_context, clear_context

logger = structlog.get_logger(__name__)


SHUTDOWN_CODE = 1001
SHUTDOWN_REASON = "Server shutdown"
CLOSE_TIMEOUT = 2.0  # seconds


# ============================================================================
# CHANNEL
# ============================================================================

class WebSocketChannel:
    """The send/ping/close surface the registry stores for one connection."""

    def __init__(self, connection: ServerConnection):
        self._connection = connection

    async def send_json(self, message: Dict[str, Any]) -> None:
        await self._connection.send(json.dumps(message, default=str))

    async def ping(self) -> "asyncio.Future":
        """Send a protocol ping; returns a waiter that resolves on the pong."""
        return await self._connection.ping()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._connection.close(code, reason)

    @property
    def remote_address(self) -> Any:
        return self._connection.remote_address


# ============================================================================
# SERVER
# ============================================================================

class RealtimeServer:
    """Accepts websocket connections on ``path`` and feeds the gateway."""

    def __init__(
        self,
        gateway: RealtimeGateway,
        host: str = "0.0.0.0",
        port: int = 3001,
        path: str = "/ws",
        max_message_bytes: int = 64 * 1024
    ):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.path = path
        self.max_message_bytes = max_message_bytes

        self._server: Optional[Server] = None

    async def start(self):
        """Start listening."""
        if self._server is not None:
            return

        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            process_request=self._check_path,
            # Liveness probes are sent by LivenessMonitor
            ping_interval=None,
            max_size=self.max_message_bytes,
        )
        if self.port == 0:
            # Ephemeral port picked by the OS
            self.port = next(iter(self._server.sockets)).getsockname()[1]
        logger.info("realtime_server_started", host=self.host, port=self.port, path=self.path)

    async def stop(self):
        """Close every registered connection with 1001, then stop listening."""
        if self._server is None:
            return

        registry = self.gateway.registry
        closing = []
        for connection_id in sorted(registry.connection_ids()):
            channel = registry.channel_for(connection_id)
            if channel is not None:
                closing.append(self._close_channel(connection_id, channel))
        if closing:
            await asyncio.gather(*closing)

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("realtime_server_stopped", closed=len(closing))

    async def _close_channel(self, connection_id: int, channel: Any):
        try:
            await asyncio.wait_for(channel.close(SHUTDOWN_CODE, SHUTDOWN_REASON), timeout=CLOSE_TIMEOUT)
        except Exception as e:
            logger.debug("shutdown_close_failed", connection_id=connection_id, error=repr(e))

    def _check_path(self, connection: ServerConnection, request):
        if urlsplit(request.path).path != self.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def _handle_connection(self, connection: ServerConnection):
        """One task per connection: register, pump frames, unregister."""
        connection_id = self.gateway.connect(WebSocketChannel(connection))
        add_context(connection_id=connection_id)
        logger.info("client_connected", remote=str(connection.remote_address))

        try:
            async for message in connection:
                await self.gateway.handle_inbound_message(connection_id, message)
        except ConnectionClosedError as e:
            code = e.rcvd.code if e.rcvd else None
            logger.info("client_connection_lost", code=code)
        finally:
            self.gateway.disconnect(connection_id)
            logger.info("client_disconnected")
            clear_context()

    @property
    def is_serving(self) -> bool:
        return self._server is not None
