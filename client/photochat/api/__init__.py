"""REST collaborator for conversations, history pages and user lookup."""
from .client import ChatApiClient

__all__ = ["ChatApiClient"]
