"""ChatContext: the explicit handle for one signed-in session.

Created after login and closed at logout. It owns the collaborators that
sessions and the roster share: the credential store, the IdentityResolver,
the REST client and the single ConnectionManager.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import httpx

from photochat.api.client import ChatApiClient
from photochat.auth.identity import IdentityResolver
from photochat.auth.storage import CredentialStore
from photochat.chat.roster import ChatRoster
from photochat.chat.schemas import ChatTarget
from photochat.chat.session import ChatSession
from photochat.config import AppConfig
from photochat.realtime.manager import ConnectionManager, TransportFactory

logger = logging.getLogger(__name__)


class ChatContext:
    """Owns config, credentials and the shared connection.

    Args:
        config: Loaded settings.
        store: Credential store written by the login flow.
        http_client: Optional pre-built httpx client (tests mount a fake
            backend through ``httpx.ASGITransport``).
        transport_factory: Optional transport factory for the manager.
    """

    def __init__(
        self,
        config: AppConfig,
        store: CredentialStore,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.identity = IdentityResolver(store)
        self.api = ChatApiClient(
            config.api.base_url,
            self.identity,
            timeout=config.api.request_timeout_seconds,
            http_client=http_client,
        )
        self.connection = ConnectionManager(
            self.identity,
            config.realtime_url(),
            settings=config.realtime,
            transport_factory=transport_factory,
        )
        self._closed = False

    def session(
        self,
        target: ChatTarget,
        on_change: Optional[Callable[[], None]] = None,
    ) -> ChatSession:
        """Create a (not yet started) session for *target*."""
        return ChatSession(
            target,
            connection=self.connection,
            api=self.api,
            identity=self.identity,
            settings=self.config.chat,
            on_change=on_change,
        )

    def roster(self, on_change: Optional[Callable[[], None]] = None) -> ChatRoster:
        """Create a (not yet started) conversation roster."""
        return ChatRoster(
            connection=self.connection,
            api=self.api,
            identity=self.identity,
            on_change=on_change,
        )

    async def close(self) -> None:
        """Disconnect and release the HTTP client. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.connection.disconnect()
        await self.api.aclose()
        logger.info("Chat context closed")

    async def __aenter__(self) -> "ChatContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


@asynccontextmanager
async def open_chat_context(
    config: AppConfig,
    store: CredentialStore,
    **kwargs,
) -> AsyncIterator[ChatContext]:
    """Open a context, connect it, and close it on exit."""
    context = ChatContext(config, store, **kwargs)
    try:
        await context.connection.connect()
        yield context
    finally:
        await context.close()
