import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]

AUTH_FAILED_CLOSE_CODE = 4001

# Server replies to keepalive frames; never passed to the handler.
CONTROL_MESSAGE_TYPES = frozenset({"pong", "heartbeat_ack"})


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delay before the n-th consecutive reconnect attempt.

    The default is a fixed 5 second wait; a multiplier above 1 grows it
    exponentially up to ``max_delay``. Attempts are never capped.
    """

    delay: float = 5.0
    multiplier: float = 1.0
    max_delay: float | None = None

    def next_delay(self, attempt: int) -> float:
        delay = self.delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class NotificationClient:
    """Consumes ``/ws/notifications`` and keeps the subscription alive.

    On every (re)connect the token handshake is sent first. Parsed messages
    are handed to ``on_message``. A heartbeat frame goes out every
    ``heartbeat_interval`` seconds so the server's idle sweep does not close
    a quiet subscription. One run loop owns the socket, so at most one
    reconnect attempt is ever pending.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_message: MessageHandler,
        policy: ReconnectPolicy | None = None,
        connect=websockets.connect,
        heartbeat_interval: float | None = 30.0,
    ):
        self.url = url
        self.token = token
        self.on_message = on_message
        self.policy = policy or ReconnectPolicy()
        self._connect = connect
        self.heartbeat_interval = heartbeat_interval

        self._task: asyncio.Task[None] | None = None
        self._websocket = None
        self._closing = asyncio.Event()
        self.connect_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if not self.running:
            self._closing.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> None:
        attempt = 0
        while not self._closing.is_set():
            close_code = None
            try:
                close_code = await self._run_once()
                attempt = 0
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Notification connection failed: {e}")

            if self._closing.is_set():
                break
            if close_code == AUTH_FAILED_CLOSE_CODE:
                logger.error("Notification handshake rejected, not reconnecting")
                break

            delay = self.policy.next_delay(attempt)
            attempt += 1
            logger.info(f"Reconnecting to notifications in {delay:.1f}s (attempt {attempt})")

            try:
                await asyncio.wait_for(self._closing.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _run_once(self) -> int | None:
        async with self._connect(self.url) as websocket:
            self._websocket = websocket
            self.connect_count += 1
            heartbeat = None
            try:
                await websocket.send(json.dumps({"token": self.token}))
                if self.heartbeat_interval:
                    heartbeat = asyncio.create_task(self._send_heartbeats(websocket))
                async for raw in websocket:
                    await self._handle_raw(raw)
            except ConnectionClosed as e:
                logger.info(f"Notification connection closed: {e}")
            finally:
                self._websocket = None
                if heartbeat is not None:
                    heartbeat.cancel()
                    try:
                        await heartbeat
                    except asyncio.CancelledError:
                        pass

            return websocket.close_code

    async def _send_heartbeats(self, websocket) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await websocket.send(json.dumps({"type": "heartbeat"}))
            except ConnectionClosed:
                return

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON notification frame")
            return
        if isinstance(message, dict) and message.get("type") in CONTROL_MESSAGE_TYPES:
            return

        try:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Notification handler failed")

    async def reconnect(self) -> None:
        """Drop the current socket; the run loop reconnects after the policy delay."""
        if self._websocket is not None:
            await self._websocket.close()

    async def close(self) -> None:
        self._closing.set()
        if self._websocket is not None:
            await self._websocket.close()

        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
