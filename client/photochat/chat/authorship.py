"""Sender resolution: decide whether a message is mine, theirs, or unknown."""
from typing import Iterable, Optional, Union

from .schemas import Authorship, BareSender, EmbeddedSender, normalize_sender


def resolve_authorship(
    sender: Optional[Union[BareSender, EmbeddedSender]],
    self_identities: Iterable[Optional[str]],
    other_identity: Optional[str],
) -> Authorship:
    """Classify a message sender against the two known participants.

    The sender is normalized to a bare identity first, then compared with
    every identity the current user is known by (the resolved identity and
    the stored profile id may come from different paths), then with the other
    participant. The first match wins; anything else is ``UNKNOWN`` rather
    than a guess.

    Args:
        sender: Tagged sender from a Message.
        self_identities: Identities of the current user. Empty values are ignored.
        other_identity: Identity of the other participant, if known.

    Returns:
        The resolved Authorship.
    """
    sender_id = normalize_sender(sender)
    if not sender_id:
        return Authorship.UNKNOWN

    if any(sender_id == identity for identity in self_identities if identity):
        return Authorship.MINE
    if other_identity and sender_id == other_identity:
        return Authorship.THEIRS
    return Authorship.UNKNOWN
