"""Per-conversation chat state machine.

A ChatSession turns a navigation target into an active conversation and then
reconciles three independent sources of messages:

    - REST history pages (newest first, page size from config)
    - live ``messageReceived`` pushes
    - optimistic local drafts created by :meth:`ChatSession.send`

States::

    initializing -> resolving -> active
                              \\-> failed  (retry() goes back to resolving)

Merge rules:
    - The list is newest first; older pages append to the tail.
    - Every record is unique by messageId: a push already present in a page
      (or vice versa) is not added twice.
    - A push that echoes one of my pending drafts replaces the draft in
      place. The echo is matched by clientId when the server returns it,
      otherwise by the oldest pending draft of mine with identical text.
      If the server copy is already listed (a reload got it first), the draft
      is removed instead.
    - A page shorter than the page size ends pagination for good.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from photochat.config import ChatSettings
from photochat.errors import (
    AuthRequiredError,
    ChatError,
    ErrorKind,
    IdentityMismatchError,
    InvalidMessageError,
    NetworkError,
    NotFoundError,
    SessionError,
)
from photochat.realtime.events import EventKind

from .authorship import resolve_authorship
from .schemas import (
    Authorship,
    BareSender,
    ChatTarget,
    Conversation,
    DeliveryState,
    Message,
    Participant,
    TypingSignal,
)
from .typing import TypingDebouncer, TypingIndicator

if TYPE_CHECKING:
    from photochat.api.client import ChatApiClient
    from photochat.auth.identity import IdentityResolver
    from photochat.realtime.manager import ConnectionManager

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local:"


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    RESOLVING = "resolving"
    ACTIVE = "active"
    FAILED = "failed"


class ChatSession:
    """State of one open conversation screen.

    Attributes:
        target: What the session was opened with.
        state: Current SessionState.
        error: Last network/auth/lookup error, or None. Drives a retry UI.
        connection_error: Last transport error, cleared on reconnect.
        conversation: Conversation record when it was created/fetched here.
        conversation_id: Resolved conversation id.
        current_identity: Identity the session acts as.
        profile_identity: Identity recorded in the stored profile.
        known_identities: Identities from both resolution paths (profile, token).
        other: The other participant, if known.
        draft: Text in the compose field.
        typing: Remote typing state.
    """

    def __init__(
        self,
        target: ChatTarget,
        *,
        connection: "ConnectionManager",
        api: "ChatApiClient",
        identity: "IdentityResolver",
        settings: Optional[ChatSettings] = None,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.target = target
        self.connection = connection
        self.api = api
        self.identity = identity
        self.settings = settings or ChatSettings()
        self._on_change = on_change

        self.state = SessionState.INITIALIZING
        self.error: Optional[SessionError] = None
        self.connection_error: Optional[SessionError] = None
        self.last_identity_mismatch: Optional[SessionError] = None

        self.conversation: Optional[Conversation] = None
        self.conversation_id: Optional[str] = target.conversationId
        self.current_identity: Optional[str] = None
        self.profile_identity: Optional[str] = None
        # Every identity the stored profile and token currently name
        self.known_identities: List[str] = []
        self.other: Optional[Participant] = target.participant

        self.draft = ""
        self.loading = False
        self.loading_more = False

        self._messages: List[Message] = []
        # ids that arrived by push rather than from a history page
        self._live_ids: Set[str] = set()
        self._page = 0
        self._has_more = True

        self._disposers: List[Callable[[], None]] = []
        self._joined = False
        self._closed = False

        self._outgoing_typing = TypingDebouncer(
            self._emit_typing,
            self._emit_stop_typing,
            self.settings.typing_timeout_seconds,
        )
        self.typing = TypingIndicator(
            self.settings.remote_typing_ttl_seconds, on_change=self._notify
        )

    # =========================================================================
    # Read-only views
    # =========================================================================

    @property
    def messages(self) -> List[Message]:
        """Messages, newest first."""
        return list(self._messages)

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def page(self) -> int:
        """Last history page loaded successfully (0 before the first)."""
        return self._page

    @property
    def self_identities(self) -> List[str]:
        found: List[str] = []
        for identity in (self.current_identity, self.profile_identity, *self.known_identities):
            if identity and identity not in found:
                found.append(identity)
        return found

    @property
    def other_identity(self) -> Optional[str]:
        return self.other.identity if self.other and self.other.identity else None

    def authorship(self, message: Message) -> Authorship:
        """Whether *message* is mine, theirs, or from an unknown sender."""
        return resolve_authorship(message.sender, self.self_identities, self.other_identity)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Resolve the conversation, join its room and load the first page."""
        if self._closed:
            raise RuntimeError("ChatSession is closed")
        self._subscribe()
        await self._resolve()
        if self.state == SessionState.ACTIVE:
            await self._enter_room()
            await self.load_page(1)

    async def retry(self) -> None:
        """Explicit retry after a failure."""
        if self.state in (SessionState.INITIALIZING, SessionState.FAILED):
            await self.start()
            return
        if self.state == SessionState.ACTIVE:
            if not self._joined:
                await self._enter_room()
            await self.load_page(1)

    async def close(self) -> None:
        """Dispose subscriptions, cancel timers and leave the room."""
        if self._closed:
            return
        self._closed = True
        self._outgoing_typing.cancel()
        self.typing.clear()
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        if self._joined and self.conversation_id:
            await self.connection.leave_room(self.conversation_id)
            self._joined = False
        logger.info(f"[Session] Closed session for conversation {self.conversation_id}")

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _subscribe(self) -> None:
        if self._disposers:
            return
        subscribe = self.connection.subscribe
        self._disposers = [
            subscribe(EventKind.MESSAGE_RECEIVED, self._on_message),
            subscribe(EventKind.TYPING_STARTED, self._on_typing),
            subscribe(EventKind.TYPING_STOPPED, self._on_stop_typing),
            subscribe(EventKind.CONNECTION_ERROR, self._on_connection_error),
            subscribe(EventKind.CONNECTED, self._on_connected),
        ]

    # =========================================================================
    # Resolution
    # =========================================================================

    async def _resolve(self) -> None:
        self.state = SessionState.RESOLVING
        self.error = None
        self.loading = True
        self._notify()
        try:
            self.current_identity = await self.identity.require()
            self.profile_identity = await self.identity.profile_identity()
            self.known_identities = await self.identity.candidates()
            await self._check_target_identity()
            if self.conversation_id is None:
                self.conversation = await self._create_or_get_conversation()
                self.conversation_id = self.conversation.conversationId
                self._adopt_other_participant(self.conversation)
            elif not self.other_identity:
                await self._lookup_conversation()
        except ChatError as exc:
            logger.warning(f"[Session] Could not open conversation: {exc}")
            self.state = SessionState.FAILED
            self.error = exc.to_state()
            self.loading = False
            self._notify()
            return

        self.state = SessionState.ACTIVE
        logger.info(
            f"[Session] Conversation {self.conversation_id} active "
            f"(me={self.current_identity}, other={self.other_identity})"
        )
        self._notify()

    async def _check_target_identity(self) -> None:
        other = self.other_identity
        if not other or other not in self.self_identities:
            return
        mismatch = IdentityMismatchError(
            f"Target participant {other} resolves to the current user"
        )
        self.last_identity_mismatch = mismatch.to_state()
        logger.warning(f"[Session] {mismatch}; re-resolving identity")
        self.current_identity = await self.identity.require()
        self.profile_identity = await self.identity.profile_identity()
        self.known_identities = await self.identity.candidates()
        if other in self.self_identities:
            logger.error(f"[Session] Identity {other} is both sender and recipient")

    async def _create_or_get_conversation(self) -> Conversation:
        participant = self.target.participant or Participant()
        other_id = participant.identity
        if not other_id:
            if not participant.contactAddress:
                raise NotFoundError("Cannot determine which user to chat with")
            logger.info(f"[Session] Looking up user by email {participant.contactAddress}")
            found = await self.api.find_user_by_email(participant.contactAddress)
            other_id = found.identity
            self.other = found.model_copy(
                update={"displayName": participant.displayName or found.displayName}
            )

        logger.info(f"[Session] Creating conversation with {other_id}")
        return await self.api.create_conversation([self.current_identity, other_id])

    def _adopt_other_participant(self, conversation: Conversation) -> None:
        """Fill in the other participant from the conversation record."""
        me = set(self.self_identities)
        if self.other_identity:
            record = conversation.participant(self.other_identity)
            if record is not None and not self.other.displayName:
                self.other = record
            return
        for participant in conversation.participants:
            if participant.identity and participant.identity not in me:
                self.other = participant
                return

    async def _lookup_conversation(self) -> None:
        """Find the other participant of a conversation opened by id only.

        A failed lookup is not fatal: the other participant is then inferred
        from the first message someone else sent.
        """
        try:
            conversations = await self.api.list_conversations()
        except ChatError as exc:
            logger.warning(f"[Session] Could not look up conversation {self.conversation_id}: {exc}")
            return
        for conversation in conversations:
            if conversation.conversationId == self.conversation_id:
                self.conversation = conversation
                self._adopt_other_participant(conversation)
                return

    def _infer_other_participant(self, messages: List[Message]) -> None:
        if self.other_identity:
            return
        me = set(self.self_identities)
        for message in messages:
            sender = message.sender_identity
            if sender and sender not in me:
                self.other = Participant(identity=sender)
                logger.info(f"[Session] Other participant inferred from messages: {sender}")
                return

    async def _enter_room(self) -> None:
        try:
            await self.connection.connect()
        except AuthRequiredError as exc:
            self.error = exc.to_state()
            self._notify()
            return
        self._joined = await self.connection.join_room(self.conversation_id)

    async def _verify_identity(self) -> None:
        """Re-resolve and re-join if the stored profile changed under us.

        The re-join always reaches the wire, even when another component
        (the roster) holds the same room.
        """
        stored = await self.identity.profile_identity()
        if stored is None or stored in self.self_identities:
            return
        mismatch = IdentityMismatchError(
            f"Stored identity {stored} differs from session identity {self.current_identity}"
        )
        self.last_identity_mismatch = mismatch.to_state()
        logger.warning(f"[Session] {mismatch}; re-joining room")
        self.current_identity = await self.identity.resolve() or stored
        self.profile_identity = stored
        self.known_identities = await self.identity.candidates()
        if self._joined and self.conversation_id:
            await self.connection.rejoin_room(self.conversation_id)
        self._notify()

    # =========================================================================
    # History
    # =========================================================================

    async def load_page(self, page: int = 1) -> List[Message]:
        """Fetch one history page and merge it.

        Page 1 replaces the history part of the list (live pushes and drafts
        that are not in the page stay on top). Later pages append to the
        tail, skipping ids already present.

        Returns:
            The messages added to the list.
        """
        if not self.conversation_id:
            return []
        first = page == 1
        if first:
            self.loading = True
            self.error = None
        else:
            self.loading_more = True
        self._notify()

        try:
            fetched = await self.api.fetch_messages(
                self.conversation_id, page, self.settings.page_size
            )
        except ChatError as exc:
            logger.warning(f"[Session] Failed to load page {page} of {self.conversation_id}: {exc}")
            if not self._closed:
                self.error = exc.to_state()
            return []
        finally:
            self.loading = False
            self.loading_more = False
            self._notify()

        if self._closed:
            return []

        if len(fetched) < self.settings.page_size:
            self._has_more = False

        if first:
            added = self._dedupe(fetched, set())
            page_ids = {m.messageId for m in added}
            # Drafts whose server copy is already in the page
            confirmed_clients = {m.clientId for m in added if m.clientId}
            kept = [
                m for m in self._messages
                if m.messageId not in page_ids
                and not (m.is_pending and m.clientId in confirmed_clients)
                and (m.messageId in self._live_ids or m.delivery != DeliveryState.CONFIRMED)
            ]
            self._messages = kept + added
        else:
            added = self._dedupe(fetched, {m.messageId for m in self._messages})
            self._messages.extend(added)

        self._infer_other_participant(self._messages)
        self._page = page
        self._notify()
        return added

    async def load_more(self) -> List[Message]:
        """Load the next older page, if pagination is still open."""
        if (
            not self._has_more
            or self.loading
            or self.loading_more
            or self.state != SessionState.ACTIVE
        ):
            return []
        return await self.load_page(self._page + 1)

    @staticmethod
    def _dedupe(messages: List[Message], seen: Set[str]) -> List[Message]:
        unique = []
        for message in messages:
            if message.messageId in seen:
                continue
            seen.add(message.messageId)
            unique.append(message)
        return unique

    # =========================================================================
    # Live events
    # =========================================================================

    async def _on_message(self, message: Message) -> None:
        if self._closed or self.state != SessionState.ACTIVE:
            return
        if message.conversationId and message.conversationId != self.conversation_id:
            return
        await self._verify_identity()
        self._merge_live(message)

    def _merge_live(self, message: Message) -> None:
        self._infer_other_participant([message])
        index = self._find_pending_echo(message)
        if index is not None:
            draft = self._messages[index]
            if any(m.messageId == message.messageId for m in self._messages):
                # Server copy already arrived with a history page.
                del self._messages[index]
                logger.debug(f"[Session] Draft {draft.clientId} already confirmed as {message.messageId}")
                self._notify()
                return
            self._messages[index] = message.model_copy(
                update={
                    "clientId": message.clientId or draft.clientId,
                    "delivery": DeliveryState.CONFIRMED,
                }
            )
            self._live_ids.add(message.messageId)
            logger.debug(f"[Session] Draft {draft.clientId} confirmed as {message.messageId}")
            self._notify()
            return

        if any(m.messageId == message.messageId for m in self._messages):
            logger.debug(f"[Session] Duplicate message ignored: {message.messageId}")
            return

        self._messages.insert(0, message)
        self._live_ids.add(message.messageId)
        self._notify()

    def _find_pending_echo(self, message: Message) -> Optional[int]:
        if message.clientId:
            for index, entry in enumerate(self._messages):
                if entry.is_pending and entry.clientId == message.clientId:
                    return index
        if self.authorship(message) != Authorship.MINE:
            return None
        # Newest first, so scan from the tail for the oldest draft.
        for index in range(len(self._messages) - 1, -1, -1):
            entry = self._messages[index]
            if entry.is_pending and entry.text == message.text:
                return index
        return None

    def _signal_applies(self, signal: TypingSignal) -> bool:
        if signal.conversationId and signal.conversationId != self.conversation_id:
            return False
        return bool(signal.user) and signal.user not in self.self_identities

    def _on_typing(self, signal: TypingSignal) -> None:
        if not self._closed and self._signal_applies(signal):
            self.typing.start(signal.user, signal.name)

    def _on_stop_typing(self, signal: TypingSignal) -> None:
        if not self._closed and self._signal_applies(signal):
            self.typing.stop(signal.user)

    def _on_connection_error(self, error: Exception) -> None:
        self.connection_error = SessionError(
            kind=ErrorKind.NETWORK,
            message=f"Cannot reach the chat server. Please try again later. ({error})",
        )
        self._notify()

    def _on_connected(self, _payload: None) -> None:
        if self.connection_error is not None:
            self.connection_error = None
            self._notify()

    # =========================================================================
    # Compose
    # =========================================================================

    async def set_draft(self, text: str) -> None:
        """Update the compose field; non-empty input counts as typing."""
        self.draft = text
        if text:
            await self.notify_typing()

    async def notify_typing(self) -> None:
        """Emit typing and restart the stop-typing timer."""
        if self.state != SessionState.ACTIVE or not self.conversation_id:
            return
        await self._outgoing_typing.poke()

    async def _emit_typing(self) -> None:
        await self.connection.send_typing(self.conversation_id)

    async def _emit_stop_typing(self) -> None:
        await self.connection.send_stop_typing(self.conversation_id)

    async def send(self, text: Optional[str] = None) -> Optional[Message]:
        """Send *text* (or the current draft) with an optimistic pending entry.

        The pending entry is replaced when the server echoes the message.

        Raises:
            InvalidMessageError: Empty after trimming, or over the length limit.
                Nothing is emitted in that case.

        Returns:
            The local draft entry, or None if the conversation is not active.
        """
        body = (self.draft if text is None else text).strip()
        if not body:
            raise InvalidMessageError("Message is empty")
        limit = self.settings.max_message_length
        if len(body) > limit:
            raise InvalidMessageError(f"Message exceeds {limit} characters")
        if self.state != SessionState.ACTIVE or not self.conversation_id:
            logger.warning("[Session] Send ignored: conversation is not active")
            return None

        await self._outgoing_typing.stop()

        client_id = str(uuid.uuid4())
        draft = Message(
            messageId=f"{LOCAL_ID_PREFIX}{client_id}",
            conversationId=self.conversation_id,
            sender=BareSender(identity=self.current_identity),
            text=body,
            createdAt=datetime.now(timezone.utc),
            clientId=client_id,
            delivery=DeliveryState.PENDING,
        )
        self._messages.insert(0, draft)
        self.draft = ""
        self._notify()

        dispatched = await self.connection.send(self.conversation_id, body, client_id)
        if dispatched:
            return draft

        failed = draft.model_copy(update={"delivery": DeliveryState.FAILED})
        for index, entry in enumerate(self._messages):
            if entry.clientId == client_id and entry.is_pending:
                self._messages[index] = failed
                break
        self.error = NetworkError("Could not send message. Please try again.").to_state()
        self._notify()
        return failed

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
