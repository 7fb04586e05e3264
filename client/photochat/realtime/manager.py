"""Connection manager for the real-time chat channel.

This module owns the single live transport of a signed-in session and fans
inbound events out to subscribers. Chat sessions and the conversation roster
share one ConnectionManager, handed to them by the ChatContext.

Key features:
    - Authenticated handshake using the stored bearer token
    - Typed event subscription with disposers
    - Reference-counted room membership (one outbound join per room, however
      many components hold it)
    - Automatic re-join of held rooms after every reconnect
    - Fire-and-forget outbound events (send, typing, stop typing)

Failure model:
    Transport errors are delivered on the ``connectionError`` channel rather
    than raised. Only ``connect()`` raises, when no credential is stored.
    Reconnection is the transport's job; the manager never loops.

Thread Safety:
    Designed for a single asyncio event loop. NOT thread-safe.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from photochat.auth.identity import IdentityResolver
from photochat.chat.schemas import Message, TypingSignal
from photochat.config import RealtimeSettings
from photochat.errors import AuthRequiredError

from .events import INBOUND_EVENTS, EventKind, OutboundEvent
from .transport import EventCallback, WebSocketTransport

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]
TransportFactory = Callable[[str, str, EventCallback], WebSocketTransport]

# Marker for inbound payloads that failed to parse
_DROP = object()


class ConnectionManager:
    """Owns the transport handle, room membership and subscriber lists.

    Attributes:
        url: WebSocket endpoint.
        identity: Resolver supplying the handshake credential.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        url: str,
        *,
        settings: Optional[RealtimeSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.identity = identity
        self.url = url
        self.settings = settings or RealtimeSettings()
        self._transport_factory = transport_factory or self._build_transport

        self._transport: Optional[WebSocketTransport] = None

        # event kind -> handlers, in subscription order
        self._handlers: Dict[EventKind, List[Handler]] = {kind: [] for kind in EventKind}

        # conversation_id -> number of holders
        self._rooms: Dict[str, int] = {}

    def _build_transport(
        self, url: str, token: str, on_event: EventCallback
    ) -> WebSocketTransport:
        return WebSocketTransport(
            url,
            token,
            on_event,
            reconnection=self.settings.reconnection,
            reconnection_attempts=self.settings.reconnection_attempts,
            reconnection_delay=self.settings.reconnection_delay_seconds,
            send_buffer_size=self.settings.send_buffer_size,
        )

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Open the transport unless one is already live.

        Returns as soon as the connection attempt is dispatched; the
        ``connected`` event reports the completed handshake.

        Raises:
            AuthRequiredError: No stored credential. Do not retry without
                re-authenticating.
        """
        if self._transport is not None and self._transport.running:
            logger.info("[Manager] Connection already open")
            return

        token = await self.identity.credential()
        if not token:
            raise AuthRequiredError("Auth token is required for the chat connection")

        self._transport = self._transport_factory(self.url, token, self._on_transport_event)
        self._transport.open()

    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    async def disconnect(self) -> None:
        """Close the transport and drop all subscriptions and room holds.

        Components must subscribe again after a new ``connect()``; handlers
        from before the disconnect are never invoked again.
        """
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        dropped = sum(len(handlers) for handlers in self._handlers.values())
        for handlers in self._handlers.values():
            handlers.clear()
        self._rooms.clear()
        logger.info(f"[Manager] Disconnected; dropped {dropped} subscriptions")

    # =========================================================================
    # Room membership
    # =========================================================================

    async def join_room(self, conversation_id: str) -> bool:
        """Hold membership of a conversation room.

        Only the first holder causes an outbound join. If the handshake is
        still pending the join goes out once it completes. Without a
        transport this is a logged no-op: call ``connect()`` first.

        Returns:
            True if a hold was taken, False if there is no transport.
        """
        if self._transport is None:
            logger.error(f"[Manager] Not connected. Cannot join chat {conversation_id}")
            return False

        holders = self._rooms.get(conversation_id, 0)
        self._rooms[conversation_id] = holders + 1
        if holders:
            logger.debug(f"[Manager] Room {conversation_id} already joined ({holders + 1} holders)")
            return True

        if self._transport.connected:
            await self._transport.emit(OutboundEvent.JOIN_CHAT.value, conversation_id)
        logger.info(f"[Manager] Joined chat room {conversation_id}")
        return True

    async def leave_room(self, conversation_id: str) -> None:
        """Release one hold on a room; the last release emits the leave."""
        if self._transport is None:
            logger.error(f"[Manager] Not connected. Cannot leave chat {conversation_id}")
            return

        holders = self._rooms.get(conversation_id, 0)
        if holders > 1:
            self._rooms[conversation_id] = holders - 1
            return
        self._rooms.pop(conversation_id, None)
        if holders and self._transport.connected:
            await self._transport.emit(OutboundEvent.LEAVE_CHAT.value, conversation_id)
        logger.info(f"[Manager] Left chat room {conversation_id}")

    async def rejoin_room(self, conversation_id: str) -> bool:
        """Repeat the join of a held room on the wire.

        Holder counts are unchanged. A sole holder leaves and joins again;
        a shared room only gets a fresh join so other holders keep receiving
        events.

        Returns:
            True if anything was emitted.
        """
        holders = self._rooms.get(conversation_id, 0)
        if self._transport is None or not holders or not self._transport.connected:
            logger.debug(f"[Manager] Room {conversation_id} not rejoined (held by {holders})")
            return False
        if holders == 1:
            await self._transport.emit(OutboundEvent.LEAVE_CHAT.value, conversation_id)
        await self._transport.emit(OutboundEvent.JOIN_CHAT.value, conversation_id)
        logger.info(f"[Manager] Re-joined chat room {conversation_id}")
        return True

    def joined_rooms(self) -> List[str]:
        return list(self._rooms)

    async def _rejoin_rooms(self) -> None:
        if self._transport is None:
            return
        for conversation_id in list(self._rooms):
            await self._transport.emit(OutboundEvent.JOIN_CHAT.value, conversation_id)
        if self._rooms:
            logger.info(f"[Manager] Re-joined {len(self._rooms)} rooms after connect")

    # =========================================================================
    # Outbound events
    # =========================================================================

    async def send(
        self, conversation_id: str, text: str, client_id: Optional[str] = None
    ) -> bool:
        """Emit a send-message intent.

        Delivery is confirmed later by a ``messageReceived`` event, never by
        this call.

        Returns:
            True if the intent was handed to the transport, False if there is
            no transport.
        """
        if self._transport is None:
            logger.error(f"[Manager] Not connected. Cannot send message to {conversation_id}")
            return False
        payload: Dict[str, Any] = {"chatId": conversation_id, "text": text}
        if client_id:
            payload["clientId"] = client_id
        await self._transport.emit(OutboundEvent.SEND_MESSAGE.value, payload)
        return True

    async def send_typing(self, conversation_id: str) -> None:
        await self._emit_signal(OutboundEvent.TYPING, conversation_id)

    async def send_stop_typing(self, conversation_id: str) -> None:
        await self._emit_signal(OutboundEvent.STOP_TYPING, conversation_id)

    async def _emit_signal(self, event: OutboundEvent, conversation_id: str) -> None:
        if self._transport is None:
            logger.error(f"[Manager] Not connected. Cannot send {event.value} to {conversation_id}")
            return
        await self._transport.emit(event.value, {"chatId": conversation_id})

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, kind: EventKind, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *kind*; returns a disposer.

        Earlier subscriptions are kept. Callers must invoke the disposer on
        teardown or the handler keeps firing until ``disconnect()``.
        """
        kind = EventKind(kind)
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers[kind]
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._handlers[EventKind(kind)])

    async def _on_transport_event(self, name: str, data: Any) -> None:
        kind = INBOUND_EVENTS.get(name)
        if kind is None:
            logger.debug(f"[Manager] Ignoring unknown event {name!r}")
            return

        if kind == EventKind.CONNECTED:
            logger.info("[Manager] Socket connected")
            await self._rejoin_rooms()
        elif kind == EventKind.DISCONNECTED:
            logger.info("[Manager] Socket disconnected")
        elif kind == EventKind.CONNECTION_ERROR:
            logger.error(f"[Manager] Socket connection error: {data}")

        payload = self._parse_payload(kind, data)
        if payload is _DROP:
            return
        await self._dispatch(kind, payload)

    @staticmethod
    def _parse_payload(kind: EventKind, data: Any) -> Any:
        try:
            if kind == EventKind.MESSAGE_RECEIVED:
                return Message.model_validate(data)
            if kind in (EventKind.TYPING_STARTED, EventKind.TYPING_STOPPED):
                return TypingSignal.model_validate(data if isinstance(data, dict) else {})
        except ValidationError as exc:
            logger.warning(f"[Manager] Dropping malformed {kind.value} payload: {exc}")
            return _DROP
        if kind == EventKind.CONNECTION_ERROR:
            return data if isinstance(data, Exception) else ConnectionError(str(data))
        return None

    async def _dispatch(self, kind: EventKind, payload: Any) -> None:
        for handler in list(self._handlers[kind]):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # pylint: disable=broad-except
                logger.error(f"[Manager] Handler for {kind.value} failed: {e}")
