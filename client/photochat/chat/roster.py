"""Conversation list kept fresh by live message events.

The roster loads the current user's conversations over REST, holds a room
membership for each one so new messages are pushed to this client, and
refreshes itself whenever a message arrives. Bursts of messages coalesce:
while a refresh is in flight, further events schedule exactly one follow-up
refresh.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from photochat.errors import AuthRequiredError, ChatError, SessionError
from photochat.realtime.events import EventKind

from .schemas import ChatTarget, Conversation, Message, Participant

if TYPE_CHECKING:
    from photochat.api.client import ChatApiClient
    from photochat.auth.identity import IdentityResolver
    from photochat.realtime.manager import ConnectionManager

logger = logging.getLogger(__name__)


class ChatRoster:
    """The conversation list screen's state."""

    def __init__(
        self,
        *,
        connection: "ConnectionManager",
        api: "ChatApiClient",
        identity: "IdentityResolver",
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.connection = connection
        self.api = api
        self.identity = identity
        self._on_change = on_change

        self.conversations: List[Conversation] = []
        self.current_identity: Optional[str] = None
        self.loading = False
        self.error: Optional[SessionError] = None

        self._joined: Set[str] = set()
        self._dispose: Optional[Callable[[], None]] = None
        self._refresh_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self._refresh_again = False
        self._closed = False

    async def start(self) -> None:
        """Resolve the user, connect, subscribe and load the list."""
        if self._closed:
            raise RuntimeError("ChatRoster is closed")
        self.current_identity = await self.identity.resolve()
        try:
            await self.connection.connect()
        except AuthRequiredError as exc:
            logger.warning(f"[Roster] Cannot connect: {exc}")
            self.error = exc.to_state()
            self._notify()
            return
        if self._dispose is None:
            self._dispose = self.connection.subscribe(
                EventKind.MESSAGE_RECEIVED, self._on_message
            )
        await self.refresh()

    async def refresh(self) -> List[Conversation]:
        """Reload conversations and hold a room for each new one."""
        if self._closed:
            return self.conversations
        self.loading = True
        self.error = None
        self._notify()
        try:
            conversations = await self.api.list_conversations()
        except ChatError as exc:
            logger.warning(f"[Roster] Failed to load conversations: {exc}")
            if not self._closed:
                self.error = exc.to_state()
            return self.conversations
        finally:
            self.loading = False
            self._notify()

        # Closed while the request was in flight.
        if self._closed:
            return self.conversations

        self.conversations = conversations
        for conversation in conversations:
            cid = conversation.conversationId
            if cid in self._joined:
                continue
            if await self.connection.join_room(cid):
                self._joined.add(cid)
        logger.info(f"[Roster] Loaded {len(conversations)} conversations")
        self._notify()
        return conversations

    def schedule_refresh(self) -> None:
        """Refresh in the background, coalescing with any refresh in flight."""
        if self._closed:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_again = True
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def wait_idle(self) -> None:
        """Wait for background refreshes to finish."""
        while self._refresh_task is not None and not self._refresh_task.done():
            await self._refresh_task

    async def _refresh_loop(self) -> None:
        while True:
            self._refresh_again = False
            await self.refresh()
            if not self._refresh_again or self._closed:
                break

    async def on_focus(self) -> None:
        """The list became visible again."""
        await self.refresh()

    def _on_message(self, _message: Message) -> None:
        self.schedule_refresh()

    def other_participant(self, conversation: Conversation) -> Optional[Participant]:
        """First participant that is not the current user, else the first one."""
        for participant in conversation.participants:
            if participant.identity != self.current_identity:
                return participant
        return conversation.participants[0] if conversation.participants else None

    def target_for(self, conversation: Conversation) -> ChatTarget:
        """Navigation target for opening *conversation* in a ChatSession."""
        return ChatTarget(
            conversationId=conversation.conversationId,
            participant=self.other_participant(conversation),
        )

    async def close(self) -> None:
        """Stop refreshing and release every held room."""
        if self._closed:
            return
        self._closed = True
        if self._dispose is not None:
            self._dispose()
            self._dispose = None
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for cid in sorted(self._joined):
            await self.connection.leave_room(cid)
        self._joined.clear()
        logger.info("[Roster] Closed")

    async def __aenter__(self) -> "ChatRoster":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
