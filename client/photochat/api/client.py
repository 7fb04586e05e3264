"""REST client for the chat endpoints.

Endpoints used by the chat core:
    - GET  /v1/chats                            Conversation list
    - POST /v1/chats                            Create-or-get a conversation
    - GET  /v1/chats/{id}/messages?page=&limit= Paginated history (newest first)
    - GET  /v1/users?email=                     User lookup by contact address
    - PUT  /v1/users/refresh_token              Token rotation after a 401

Every request carries ``Authorization: Bearer <accessToken>`` read fresh from
the credential store. A 401 triggers one refresh-and-retry; after that the
caller gets ``AuthRequiredError``.
"""
import logging
from typing import Any, List, Optional

import httpx

from photochat.auth.identity import IdentityResolver
from photochat.auth.storage import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY
from photochat.chat.schemas import Conversation, Message, Participant
from photochat.errors import AuthRequiredError, NetworkError, NotFoundError

logger = logging.getLogger(__name__)

# Response wrappers the conversation list may arrive in.
_LIST_WRAPPER_KEYS = ("chats", "data")


def _unwrap_list(payload: Any) -> List[Any]:
    """Accept a bare array or an object wrapping one under a known key."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _LIST_WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


class ChatApiClient:
    """Async REST client for conversations, messages and user lookup."""

    CHATS_PATH = "/v1/chats"
    USERS_PATH = "/v1/users"
    REFRESH_PATH = "/v1/users/refresh_token"

    def __init__(
        self,
        base_url: str,
        identity: IdentityResolver,
        *,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.identity = identity
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    async def list_conversations(self) -> List[Conversation]:
        """Fetch the current user's conversations."""
        payload = await self._request("GET", self.CHATS_PATH)
        conversations = []
        for record in _unwrap_list(payload):
            try:
                conversations.append(Conversation.model_validate(record))
            except ValueError as exc:
                logger.warning("Skipping malformed conversation record: %s", exc)
        return conversations

    async def create_conversation(self, participants: List[str]) -> Conversation:
        """Create a conversation, or get the existing one for these participants."""
        payload = await self._request(
            "POST", self.CHATS_PATH, json={"participants": participants}
        )
        try:
            return Conversation.model_validate(payload)
        except ValueError as exc:
            raise NetworkError(f"Unexpected conversation response: {exc}") from exc

    async def fetch_messages(
        self, conversation_id: str, page: int = 1, limit: int = 20
    ) -> List[Message]:
        """Fetch one page of history, newest first."""
        payload = await self._request(
            "GET",
            f"{self.CHATS_PATH}/{conversation_id}/messages",
            params={"page": page, "limit": limit},
        )
        records = payload.get("messages") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            return []
        messages = []
        for record in records:
            try:
                messages.append(Message.model_validate(record))
            except ValueError as exc:
                logger.warning("Skipping malformed message in %s: %s", conversation_id, exc)
        return messages

    async def find_user_by_email(self, email: str) -> Participant:
        """Look up a user by contact address.

        Raises:
            NotFoundError: No user has exactly this address.
        """
        payload = await self._request("GET", self.USERS_PATH, params={"email": email})
        candidates = payload if isinstance(payload, list) else [payload]
        for record in candidates:
            if isinstance(record, dict) and record.get("email") == email:
                participant = Participant.model_validate(record)
                if participant.identity:
                    return participant
        raise NotFoundError(f"No user found with email {email}")

    # -----------------------------------------------------------------------
    # Transport helpers
    # -----------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        token = await self.identity.credential()
        if not token:
            raise AuthRequiredError("Log in to use chat")

        response = await self._send(method, path, token, **kwargs)
        if response.status_code == 401:
            new_token = await self._refresh_tokens()
            if new_token is None:
                raise AuthRequiredError("Session expired; log in again")
            response = await self._send(method, path, new_token, **kwargs)
            if response.status_code == 401:
                raise AuthRequiredError("Session expired; log in again")

        if response.status_code == 404:
            raise NotFoundError(f"{method} {path} returned 404")
        if response.status_code >= 400:
            raise NetworkError(
                f"API error ({response.status_code}) for {method} {path}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Invalid JSON from {method} {path}") from exc

    async def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

    async def _refresh_tokens(self) -> Optional[str]:
        """Rotate tokens with the stored refresh token; return the new access token."""
        store = self.identity.store
        refresh_token = await store.get_item(REFRESH_TOKEN_KEY)
        if not refresh_token:
            return None
        try:
            response = await self._http.put(
                self.REFRESH_PATH,
                json={},
                headers={"Authorization": f"Bearer {refresh_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.info("Token refresh rejected (%s)", response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not access_token:
            return None
        await store.set_item(ACCESS_TOKEN_KEY, access_token)
        if data.get("refreshToken"):
            await store.set_item(REFRESH_TOKEN_KEY, data["refreshToken"])
        logger.info("Access token refreshed")
        return access_token
