"""Conversation-level components: ChatSession, ChatRoster and the message models."""
