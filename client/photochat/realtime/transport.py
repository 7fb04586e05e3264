"""WebSocket transport for the real-time chat channel.

Frames are JSON objects in both directions::

    {"event": "<name>", "data": <payload>}

The bearer token is sent in the handshake ``Authorization`` header.

The transport owns reconnection: after a failed handshake or a dropped
connection it waits a fixed delay and tries again, up to a bounded number of
attempts (reset after every successful handshake), then gives up. Frames
emitted while disconnected are kept in a bounded buffer and flushed after the
next handshake.

Lifecycle events are reported through the same callback as server events,
using the wire names ``connect``, ``disconnect`` and ``connect_error``.
"""
import asyncio
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], Awaitable[None]]


class WebSocketTransport:
    """Persistent, auto-reconnecting JSON event connection."""

    def __init__(
        self,
        url: str,
        token: str,
        on_event: EventCallback,
        *,
        reconnection: bool = True,
        reconnection_attempts: int = 5,
        reconnection_delay: float = 1.0,
        send_buffer_size: int = 100,
        connect_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.url = url
        self._token = token
        self._on_event = on_event
        self.reconnection = reconnection
        self.reconnection_attempts = reconnection_attempts
        self.reconnection_delay = reconnection_delay
        self._connect = connect_factory or connect

        self._ws: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self._closing = False
        self._buffer: deque = deque(maxlen=send_buffer_size)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def running(self) -> bool:
        """True while the connect/reconnect loop is alive."""
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self.running:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())
        logger.info("[Transport] Connecting to %s", self.url)

    async def close(self) -> None:
        """Stop reconnecting, close the socket and drop buffered frames."""
        self._closing = True
        ws, task = self._ws, self._task
        self._ws = None
        self._buffer.clear()
        if ws is not None:
            await ws.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Transport] Closed connection to %s", self.url)

    async def _run(self) -> None:
        attempts = 0
        while not self._closing:
            handshake_done = False
            try:
                async with self._connect(
                    self.url,
                    additional_headers={"Authorization": f"Bearer {self._token}"},
                ) as ws:
                    handshake_done = True
                    attempts = 0
                    self._ws = ws
                    logger.info("[Transport] Connected to %s", self.url)
                    await self._on_event("connect", None)
                    await self._flush(ws)
                    async for raw in ws:
                        await self._handle_frame(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                if handshake_done:
                    logger.warning("[Transport] Connection lost: %s", exc)
                else:
                    logger.warning("[Transport] Connection attempt failed: %s", exc)
                    await self._on_event("connect_error", exc)
            finally:
                self._ws = None

            if handshake_done:
                await self._on_event("disconnect", None)

            if self._closing or not self.reconnection:
                break
            if attempts >= self.reconnection_attempts:
                logger.error(
                    "[Transport] Giving up on %s after %d reconnection attempts",
                    self.url, attempts,
                )
                break
            attempts += 1
            logger.info(
                "[Transport] Reconnecting in %.1fs (attempt %d/%d)",
                self.reconnection_delay, attempts, self.reconnection_attempts,
            )
            await asyncio.sleep(self.reconnection_delay)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    async def emit(self, event: str, data: Any = None) -> None:
        """Send an event, or buffer it until the next handshake."""
        frame = json.dumps({"event": event, "data": data})
        ws = self._ws
        if ws is None:
            self._buffer.append(frame)
            logger.debug("[Transport] Buffered %s while disconnected", event)
            return
        try:
            await ws.send(frame)
        except (OSError, WebSocketException) as exc:
            logger.warning("[Transport] Send of %s failed, buffering: %s", event, exc)
            self._buffer.append(frame)

    async def _flush(self, ws: Any) -> None:
        # Drop each frame only once it was sent; a failure keeps it for the next handshake.
        while self._buffer:
            await ws.send(self._buffer[0])
            self._buffer.popleft()

    async def _handle_frame(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[Transport] Ignoring non-JSON frame")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning("[Transport] Ignoring frame without an event name")
            return
        await self._on_event(frame["event"], frame.get("data"))
