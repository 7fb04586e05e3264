"""Resolution of the current user's identity and bearer credential.

Two sources can name the signed-in user:

1. The stored profile record (``_id`` or ``id``).
2. The access token's payload segment (``id``, ``_id`` or ``userId`` claim).

The token is decoded without signature verification. This path is a
best-effort fallback for locating the user id, never an authentication check.
"""
import base64
import binascii
import json
import logging
from typing import Any, List, Optional

from photochat.errors import AuthRequiredError

from .storage import (
    ACCESS_TOKEN_KEY,
    LEGACY_TOKEN_KEYS,
    USER_KEY,
    CredentialStore,
)

logger = logging.getLogger(__name__)

PROFILE_ID_FIELDS = ("_id", "id")
TOKEN_ID_CLAIMS = ("id", "_id", "userId")
PROFILE_TOKEN_FIELDS = ("accessToken", "token")


def _first_identity(record: Any, fields) -> Optional[str]:
    """Return the first non-empty identifier among *fields* as a string."""
    if not isinstance(record, dict):
        return None
    for name in fields:
        value = record.get(name)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def decode_token_payload(token: str) -> Optional[dict]:
    """Decode the payload segment of a JWT without verifying it.

    Args:
        token: Compact JWT (``header.payload.signature``).

    Returns:
        The payload as a dict, or None if the token is malformed.
    """
    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Could not decode token payload: %s", exc)
        return None
    return payload if isinstance(payload, dict) else None


class IdentityResolver:
    """Derives the current user's identity from stored credentials.

    Every call re-reads the store; results are never cached because the
    profile can be replaced by a concurrent logout/login.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    async def profile(self) -> Optional[dict]:
        """Return the stored profile record, if any."""
        record = await self.store.get_json(USER_KEY)
        return record if isinstance(record, dict) else None

    async def profile_identity(self) -> Optional[str]:
        """Identity from the stored profile record (``_id`` then ``id``)."""
        return _first_identity(await self.profile(), PROFILE_ID_FIELDS)

    async def token_identity(self) -> Optional[str]:
        """Identity decoded from the access token's claims."""
        token = await self.credential()
        if not token:
            return None
        payload = decode_token_payload(token)
        return _first_identity(payload, TOKEN_ID_CLAIMS)

    async def resolve(self) -> Optional[str]:
        """Return the current identity, or None when the user must log in again."""
        identity = await self.profile_identity()
        if identity:
            return identity
        identity = await self.token_identity()
        if identity:
            logger.debug("Identity resolved from token claims: %s", identity)
            return identity
        logger.warning("No identity found in stored profile or token")
        return None

    async def require(self) -> str:
        """Like :meth:`resolve` but raise ``AuthRequiredError`` when absent."""
        identity = await self.resolve()
        if identity is None:
            raise AuthRequiredError("No signed-in user; log in to use chat")
        return identity

    async def candidates(self) -> List[str]:
        """All distinct identities the two resolution paths currently yield."""
        found: List[str] = []
        for identity in (await self.profile_identity(), await self.token_identity()):
            if identity and identity not in found:
                found.append(identity)
        return found

    async def credential(self) -> Optional[str]:
        """Return the bearer access token, following the legacy key fallbacks."""
        for key in (ACCESS_TOKEN_KEY, *LEGACY_TOKEN_KEYS):
            token = await self.store.get_item(key)
            if token and token.strip():
                return token.strip()

        profile = await self.profile()
        if profile:
            for field in PROFILE_TOKEN_FIELDS:
                token = profile.get(field)
                if isinstance(token, str) and token.strip():
                    logger.debug("Using token embedded in profile field %r", field)
                    return token.strip()
        return None
