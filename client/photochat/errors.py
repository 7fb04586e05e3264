"""Error taxonomy shared by the chat components.

Library seams (REST client, identity resolution, connection, message
validation) raise these exceptions. The stateful components (ChatSession,
ChatRoster) catch the network-originated ones and expose them as a
``SessionError`` so a UI can render a retry banner instead of crashing.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """User-facing error category.

    Attributes:
        AUTH_REQUIRED: No credential available; the user must log in again.
        NETWORK: A REST call or the transport failed; retryable.
        NOT_FOUND: Target user or conversation does not exist.
        VALIDATION: Message rejected client-side before any network call.
        IDENTITY_MISMATCH: Stored identity disagreed with the session's.
    """
    AUTH_REQUIRED = "auth_required"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    IDENTITY_MISMATCH = "identity_mismatch"


class ChatError(Exception):
    """Base class for all photochat errors."""

    kind: ErrorKind = ErrorKind.NETWORK

    def to_state(self) -> "SessionError":
        return SessionError(kind=self.kind, message=str(self))


class AuthRequiredError(ChatError):
    kind = ErrorKind.AUTH_REQUIRED


class NetworkError(ChatError):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ChatError):
    kind = ErrorKind.NOT_FOUND


class InvalidMessageError(ChatError):
    kind = ErrorKind.VALIDATION


class IdentityMismatchError(ChatError):
    kind = ErrorKind.IDENTITY_MISMATCH


class SessionError(BaseModel):
    """Error state held by a component for display and retry."""
    kind: ErrorKind = Field(..., description="Error category")
    message: str = Field(default="", description="Human-readable detail")
