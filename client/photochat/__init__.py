"""photochat client: real-time chat core of the photochat mobile app.

Modules:
    - auth: stored credentials and identity resolution
    - api: REST client for conversations, history and user lookup
    - realtime: WebSocket transport and the shared ConnectionManager
    - chat: ChatSession (one conversation) and ChatRoster (conversation list)
    - context: ChatContext, the handle that owns the shared collaborators
"""
from .context import ChatContext, open_chat_context

__all__ = ["ChatContext", "open_chat_context"]

__version__ = "0.1.0"
