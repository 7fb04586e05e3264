"""Pydantic models for conversations, messages and typing signals.

Field names are camelCase like the JSON the server speaks; wire aliases
(``_id``, ``chat``, ``name``, ``email`` …) are accepted on input so records
from REST pages and live push events parse into the same models.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


def identity_of(value: Any) -> Optional[str]:
    """Return a bare identity for an id-like value or a partial user object."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
        if value is None or isinstance(value, (dict, list, bool)):
            return None
    text = str(value).strip()
    return text or None


class DeliveryState(str, Enum):
    """Client-side delivery state of a message.

    Attributes:
        PENDING: Optimistic local draft, not yet echoed by the server.
        CONFIRMED: Record received from the server (history or push).
        FAILED: Draft that could not be handed to the transport.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Authorship(str, Enum):
    """Who wrote a message, from the current user's point of view."""
    MINE = "mine"
    THEIRS = "theirs"
    UNKNOWN = "unknown"


# =============================================================================
# Users and senders
# =============================================================================


class PartialUser(BaseModel):
    """User object as embedded by the server (only some fields populated)."""
    model_config = ConfigDict(populate_by_name=True)

    mongoId: Optional[str] = Field(default=None, alias="_id")
    id: Optional[str] = None
    name: str = ""
    email: str = ""

    @field_validator("mongoId", "id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Optional[str]:
        return identity_of(value)

    @field_validator("name", "email", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def identity(self) -> Optional[str]:
        return self.mongoId or self.id


class BareSender(BaseModel):
    """Sender given as a bare identity string."""
    kind: Literal["bare"] = "bare"
    identity: str


class EmbeddedSender(BaseModel):
    """Sender given as an embedded partial user object."""
    kind: Literal["embedded"] = "embedded"
    user: PartialUser


Sender = Annotated[Union[BareSender, EmbeddedSender], Field(discriminator="kind")]


def normalize_sender(sender: Optional[Union[BareSender, EmbeddedSender]]) -> Optional[str]:
    """Reduce either sender shape to a bare identity (None if it carries none)."""
    if sender is None:
        return None
    if isinstance(sender, BareSender):
        return sender.identity or None
    return sender.user.identity


def _wrap_sender(value: Any) -> Any:
    if value is None or isinstance(value, (BareSender, EmbeddedSender)):
        return value
    if isinstance(value, dict):
        if value.get("kind") in ("bare", "embedded"):
            return value
        return {"kind": "embedded", "user": value}
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return {"kind": "bare", "identity": str(value)}
    return value


# =============================================================================
# Messages
# =============================================================================


class Message(BaseModel):
    """A chat message from a history page, a push event, or a local draft.

    Attributes:
        messageId: Server-assigned id (``local:<clientId>`` for drafts).
        conversationId: Conversation the message belongs to.
        sender: Tagged sender; use :func:`normalize_sender` to compare it.
        text: Message body.
        createdAt: Creation time.
        readBy: Identities that have read the message.
        clientId: Correlation id of an optimistic send, if known.
        delivery: Client-side delivery state.
    """
    model_config = ConfigDict(populate_by_name=True)

    messageId: str = Field(..., validation_alias=AliasChoices("_id", "id", "messageId"))
    conversationId: str = Field(
        default="", validation_alias=AliasChoices("chat", "chatId", "conversationId")
    )
    sender: Optional[Sender] = None
    text: str = ""
    createdAt: Optional[datetime] = None
    readBy: List[str] = Field(default_factory=list)
    clientId: Optional[str] = None
    delivery: DeliveryState = DeliveryState.CONFIRMED

    @field_validator("messageId", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return identity_of(value) or value

    @field_validator("conversationId", mode="before")
    @classmethod
    def _conversation_ref(cls, value: Any) -> str:
        return identity_of(value) or ""

    @field_validator("sender", mode="before")
    @classmethod
    def _tag_sender(cls, value: Any) -> Any:
        return _wrap_sender(value)

    @field_validator("text", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("readBy", mode="before")
    @classmethod
    def _reader_ids(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [rid for rid in (identity_of(v) for v in value) if rid]

    @property
    def sender_identity(self) -> Optional[str]:
        return normalize_sender(self.sender)

    @property
    def is_pending(self) -> bool:
        return self.delivery == DeliveryState.PENDING


# =============================================================================
# Conversations
# =============================================================================


class Participant(BaseModel):
    """Conversation member (or the target of a conversation being opened)."""
    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(default="", validation_alias=AliasChoices("_id", "id", "identity"))
    displayName: str = Field(default="", validation_alias=AliasChoices("name", "displayName"))
    contactAddress: str = Field(
        default="", validation_alias=AliasChoices("email", "contactAddress")
    )

    @field_validator("identity", mode="before")
    @classmethod
    def _stringify_identity(cls, value: Any) -> str:
        return identity_of(value) or ""

    @field_validator("displayName", "contactAddress", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class MessageSummary(BaseModel):
    text: str = ""
    createdAt: Optional[datetime] = None


class Conversation(BaseModel):
    """A chat thread. Participants are unique by identity."""
    model_config = ConfigDict(populate_by_name=True)

    conversationId: str = Field(..., validation_alias=AliasChoices("_id", "id", "conversationId"))
    participants: List[Participant] = Field(default_factory=list)
    lastMessage: Optional[MessageSummary] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @field_validator("conversationId", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return identity_of(value) or value

    @field_validator("participants", mode="before")
    @classmethod
    def _participant_records(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [{"identity": p} if isinstance(p, (str, int)) else p for p in value]

    @field_validator("participants")
    @classmethod
    def _unique_by_identity(cls, value: List[Participant]) -> List[Participant]:
        seen = set()
        unique = []
        for participant in value:
            if participant.identity and participant.identity in seen:
                continue
            seen.add(participant.identity)
            unique.append(participant)
        return unique

    @field_validator("lastMessage", mode="before")
    @classmethod
    def _summary_object(cls, value: Any) -> Any:
        # Some endpoints return only the id of the last message.
        return value if isinstance(value, (dict, MessageSummary)) else None

    def participant(self, identity: str) -> Optional[Participant]:
        return next((p for p in self.participants if p.identity == identity), None)


class ChatTarget(BaseModel):
    """Where to land when opening a chat: an existing conversation and/or a user.

    At least one of ``conversationId``, ``participant.identity`` or
    ``participant.contactAddress`` must be set for a session to start.
    """
    conversationId: Optional[str] = None
    participant: Optional[Participant] = None

    @classmethod
    def from_params(cls, params: dict) -> "ChatTarget":
        """Build a target from navigation parameters.

        Accepts either a ``user`` object or the flat ``recipient`` / ``email``
        / ``userId`` fields, plus an optional ``chatId``.
        """
        user = params.get("user")
        if isinstance(user, dict):
            participant = Participant.model_validate(user)
        else:
            participant = Participant(
                identity=params.get("userId") or "",
                displayName=params.get("recipient") or "",
                contactAddress=params.get("email") or "",
            )
        return cls(conversationId=params.get("chatId") or None, participant=participant)


# =============================================================================
# Typing
# =============================================================================


class TypingSignal(BaseModel):
    """Ephemeral typing notification (start or stop) from another participant."""
    model_config = ConfigDict(populate_by_name=True)

    conversationId: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("chatId", "chat", "conversationId")
    )
    user: str = ""
    name: str = ""

    @field_validator("conversationId", mode="before")
    @classmethod
    def _conversation_ref(cls, value: Any) -> Optional[str]:
        return identity_of(value)

    @field_validator("user", mode="before")
    @classmethod
    def _user_identity(cls, value: Any) -> str:
        return identity_of(value) or ""

    @field_validator("name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value
