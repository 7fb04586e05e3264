"""Real-time channel: WebSocket transport and the shared ConnectionManager.

Provides:
    - ConnectionManager: connect/disconnect, room membership, subscriptions.
    - WebSocketTransport: JSON event frames with bounded fixed-delay retry.
    - EventKind: subscription channels.
"""
from .events import EventKind, OutboundEvent
from .manager import ConnectionManager
from .transport import WebSocketTransport

__all__ = [
    "ConnectionManager",
    "EventKind",
    "OutboundEvent",
    "WebSocketTransport",
]
