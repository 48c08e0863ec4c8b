from fastapi import WebSocket
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
import asyncio
import json
import logging
import time

from pydantic import ValidationError

from bookswap.core.exceptions import DeliveryFailure
from bookswap.core.logging import TradeAuditLogger
from bookswap.schemas.notification import HandshakeMessage, NotificationType

logger = logging.getLogger(__name__)

Authenticator = Callable[[str], Awaitable[int | None]]

WS_CLOSE_AUTH_FAILED = 4001
WS_CLOSE_IDLE = 4008


@dataclass
class Connection:
    websocket: WebSocket
    user_id: int | None = None
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


class RealtimeChannelManager:
    """Tracks live notification sockets per user.

    A socket is tracked from accept but only becomes routable once it has
    presented a valid token; messages before that are ignored.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        idle_timeout: float = 120.0,
        sweep_interval: float = 30.0,
    ):
        self.authenticator = authenticator
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval

        self.connections: dict[WebSocket, Connection] = {}
        self.user_connections: dict[int, set[WebSocket]] = defaultdict(set)

        self._sweep_task: asyncio.Task[None] | None = None

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        return self.accept(websocket)

    def accept(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket=websocket)
        self.connections[websocket] = connection
        logger.debug(f"Unauthenticated connection accepted (total: {len(self.connections)})")
        return connection

    def register(self, user_id: int, websocket: WebSocket) -> Connection:
        connection = self.connections.get(websocket)
        if connection is None:
            connection = self.accept(websocket)

        if connection.user_id is not None and connection.user_id != user_id:
            self._discard_user_socket(connection.user_id, websocket)

        connection.user_id = user_id
        connection.last_seen = time.time()
        self.user_connections[user_id].add(websocket)

        TradeAuditLogger.log_connection_event(
            "connection_registered",
            user_id,
            user_connections=len(self.user_connections[user_id]),
        )
        return connection

    def unregister(self, websocket: WebSocket) -> None:
        connection = self.connections.pop(websocket, None)
        if connection is None or connection.user_id is None:
            return

        self._discard_user_socket(connection.user_id, websocket)
        TradeAuditLogger.log_connection_event("connection_closed", connection.user_id)

    def _discard_user_socket(self, user_id: int, websocket: WebSocket) -> None:
        sockets = self.user_connections.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.user_connections[user_id]

    def is_tracked(self, websocket: WebSocket) -> bool:
        return websocket in self.connections

    def is_authenticated(self, websocket: WebSocket) -> bool:
        connection = self.connections.get(websocket)
        return connection is not None and connection.authenticated

    def is_user_connected(self, user_id: int) -> bool:
        return bool(self.user_connections.get(user_id))

    async def send(self, user_id: int, message: dict[str, Any]) -> int:
        """Write ``message`` to every live connection of ``user_id``.

        Connections whose write fails are dropped. Raises ``DeliveryFailure``
        when no connection received the message.
        """
        sockets = self.user_connections.get(user_id)
        if not sockets:
            raise DeliveryFailure(user_id)

        message_str = json.dumps(message)
        dead_connections: list[WebSocket] = []
        delivered = 0

        for websocket in sockets.copy():
            try:
                await websocket.send_text(message_str)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to send message to user {user_id}: {e}")
                dead_connections.append(websocket)

        for websocket in dead_connections:
            self.unregister(websocket)

        if not delivered:
            raise DeliveryFailure(user_id, reason="all connections failed")

        logger.debug(f"Message {message.get('type')} sent to {delivered} connection(s) of user {user_id}")
        return delivered

    async def handle_message(self, websocket: WebSocket, raw: str) -> bool:
        """Process one inbound frame. Returns True when the frame was acted on."""
        connection = self.connections.get(websocket)
        if connection is None:
            return False
        connection.last_seen = time.time()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON frame")
            return False
        if not isinstance(data, dict):
            return False

        if not connection.authenticated:
            return await self._handle_handshake(connection, data)

        message_type = data.get("type")
        if message_type == "ping":
            await websocket.send_text(json.dumps({"type": "pong"}))
            return True
        if message_type == "heartbeat":
            await websocket.send_text(
                json.dumps({"type": "heartbeat_ack", "timestamp": time.time()})
            )
            return True

        return False

    async def _handle_handshake(self, connection: Connection, data: dict[str, Any]) -> bool:
        if "token" not in data:
            logger.debug("Ignoring message from unauthenticated connection")
            return False

        try:
            handshake = HandshakeMessage.model_validate(data)
        except ValidationError:
            await self.close_connection(connection.websocket, WS_CLOSE_AUTH_FAILED, "Invalid token")
            return False

        user_id = await self.authenticator(handshake.token)
        if user_id is None:
            TradeAuditLogger.log_connection_event("handshake_failed", None)
            await self.close_connection(connection.websocket, WS_CLOSE_AUTH_FAILED, "Invalid token")
            return False

        self.register(user_id, connection.websocket)
        await connection.websocket.send_text(
            json.dumps(
                {
                    "type": NotificationType.SYSTEM.value,
                    "payload": {"message": "Connected to trade notifications"},
                }
            )
        )
        return True

    async def close_connection(self, websocket: WebSocket, code: int = 1000, reason: str = "Disconnected") -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Close on already closed socket: {e}")
        finally:
            self.unregister(websocket)

    async def sweep_stale(self, now: float | None = None) -> int:
        current_time = now if now is not None else time.time()
        stale = [
            websocket
            for websocket, connection in self.connections.items()
            if current_time - connection.last_seen > self.idle_timeout
        ]

        for websocket in stale:
            await self.close_connection(websocket, WS_CLOSE_IDLE, "Connection timeout")

        if stale:
            logger.info(f"Closed {len(stale)} idle connection(s)")
        return len(stale)

    def start(self) -> None:
        if not self._sweep_task or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._periodic_sweep())

    async def stop(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

        for websocket in list(self.connections):
            await self.close_connection(websocket, 1001, "Server shutting down")

    async def _periodic_sweep(self):
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep_stale()

                total_connections = len(self.connections)
                if total_connections > 1000:
                    logger.warning(f"High WebSocket connection count: {total_connections}")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connection sweep error: {e}")

    def get_connection_stats(self) -> dict[str, int]:
        authenticated = sum(1 for c in self.connections.values() if c.authenticated)
        return {
            "total_connections": len(self.connections),
            "authenticated_connections": authenticated,
            "pending_handshakes": len(self.connections) - authenticated,
            "connected_users": len(self.user_connections),
        }
