"""Chat/connection persistence."""

from dbcopilot.store.repository import ChatRepository, InMemoryChatRepository

__all__ = ["ChatRepository", "InMemoryChatRepository"]
