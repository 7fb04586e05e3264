"""Stored credentials and identity resolution."""
from .identity import IdentityResolver, decode_token_payload
from .storage import CredentialStore, FileCredentialStore, MemoryCredentialStore

__all__ = [
    "CredentialStore",
    "FileCredentialStore",
    "IdentityResolver",
    "MemoryCredentialStore",
    "decode_token_payload",
]
