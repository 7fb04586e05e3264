"""Tests for the message models and sender resolution."""
import pytest
from pydantic import ValidationError

from photochat.chat.authorship import resolve_authorship
from photochat.chat.schemas import (
    Authorship,
    BareSender,
    ChatTarget,
    Conversation,
    EmbeddedSender,
    Message,
    TypingSignal,
    normalize_sender,
)


def test_message_from_wire_aliases():
    message = Message.model_validate(
        {
            "_id": "m1",
            "chat": {"_id": "c1"},
            "sender": {"_id": "u2", "name": "Bob"},
            "text": None,
            "createdAt": "2024-05-01T12:00:00Z",
            "readBy": ["u1", {"_id": "u2"}, None],
        }
    )
    assert message.messageId == "m1"
    assert message.conversationId == "c1"
    assert isinstance(message.sender, EmbeddedSender)
    assert message.sender_identity == "u2"
    assert message.text == ""
    assert message.readBy == ["u1", "u2"]
    assert message.createdAt.year == 2024


def test_bare_sender_and_chat_id():
    message = Message.model_validate({"id": 7, "chatId": "c1", "sender": "u1"})
    assert message.messageId == "7"
    assert isinstance(message.sender, BareSender)
    assert message.sender_identity == "u1"


def test_message_requires_id():
    with pytest.raises(ValidationError):
        Message.model_validate({"text": "orphan"})


def test_normalize_sender_shapes():
    assert normalize_sender(None) is None
    assert normalize_sender(BareSender(identity="u1")) == "u1"
    embedded = Message.model_validate({"_id": "m", "sender": {"id": "u3"}}).sender
    assert normalize_sender(embedded) == "u3"
    nameless = Message.model_validate({"_id": "m", "sender": {"name": "ghost"}}).sender
    assert normalize_sender(nameless) is None


@pytest.mark.parametrize(
    "sender, expected",
    [
        ("u1", Authorship.MINE),
        ("p1", Authorship.MINE),
        ({"_id": "u2"}, Authorship.THEIRS),
        ("u9", Authorship.UNKNOWN),
        ({"name": "no id"}, Authorship.UNKNOWN),
    ],
)
def test_resolve_authorship_first_match_wins(sender, expected):
    message = Message.model_validate({"_id": "m", "sender": sender})
    assert resolve_authorship(message.sender, ["u1", "p1", None], "u2") == expected


def test_self_wins_over_other_when_both_match():
    sender = BareSender(identity="u1")
    assert resolve_authorship(sender, ["u1"], "u1") == Authorship.MINE


def test_conversation_participants_are_unique():
    conversation = Conversation.model_validate(
        {
            "_id": "c1",
            "participants": ["u1", {"_id": "u1", "name": "Alice"}, {"id": "u2", "email": "b@x"}],
            "lastMessage": {"text": "hey"},
            "updatedAt": "2024-05-01T12:00:00Z",
        }
    )
    assert [p.identity for p in conversation.participants] == ["u1", "u2"]
    assert conversation.participant("u2").contactAddress == "b@x"
    assert conversation.lastMessage.text == "hey"


def test_chat_target_from_params():
    flat = ChatTarget.from_params({"recipient": "Bob", "email": "bob@example.com", "chatId": "c1"})
    assert flat.conversationId == "c1"
    assert flat.participant.displayName == "Bob"
    assert flat.participant.contactAddress == "bob@example.com"
    assert flat.participant.identity == ""

    nested = ChatTarget.from_params({"user": {"_id": "u2", "name": "Bob"}})
    assert nested.conversationId is None
    assert nested.participant.identity == "u2"


def test_typing_signal_aliases():
    signal = TypingSignal.model_validate({"chat": "c1", "user": {"_id": "u2"}, "name": None})
    assert signal.conversationId == "c1"
    assert signal.user == "u2"
    assert signal.name == ""
