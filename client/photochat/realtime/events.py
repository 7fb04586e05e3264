"""Event names on the real-time channel.

Inbound wire events are mapped onto the ``EventKind`` channels that
components subscribe to; outbound events are emitted by the
ConnectionManager only.
"""
from enum import Enum
from typing import Dict


class EventKind(str, Enum):
    """Subscription channels exposed by the ConnectionManager.

    Attributes:
        CONNECTED: Transport handshake completed (also after a reconnect).
        DISCONNECTED: Transport lost or closed.
        CONNECTION_ERROR: Handshake or transport failure (payload: Exception).
        MESSAGE_RECEIVED: New or echoed message (payload: Message).
        TYPING_STARTED: Remote participant typing (payload: TypingSignal).
        TYPING_STOPPED: Remote participant stopped typing (payload: TypingSignal).
    """
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTION_ERROR = "connectionError"
    MESSAGE_RECEIVED = "messageReceived"
    TYPING_STARTED = "typingStarted"
    TYPING_STOPPED = "typingStopped"


# Inbound wire event name -> subscription channel
INBOUND_EVENTS: Dict[str, EventKind] = {
    "connect": EventKind.CONNECTED,
    "disconnect": EventKind.DISCONNECTED,
    "connect_error": EventKind.CONNECTION_ERROR,
    "message": EventKind.MESSAGE_RECEIVED,
    "typing": EventKind.TYPING_STARTED,
    "stopTyping": EventKind.TYPING_STOPPED,
}


class OutboundEvent(str, Enum):
    JOIN_CHAT = "joinChat"
    LEAVE_CHAT = "leaveChat"
    SEND_MESSAGE = "sendMessage"
    TYPING = "typing"
    STOP_TYPING = "stopTyping"
