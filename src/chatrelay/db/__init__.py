"""Conversation persistence."""

from chatrelay.config import settings
from chatrelay.db.base import ConversationStore
from chatrelay.db.memory import InMemoryConversationStore


def create_conversation_store() -> ConversationStore:
    """Build the store selected by settings.storage_backend."""
    if settings.storage_backend == "memory":
        return InMemoryConversationStore()

    from chatrelay.db.postgres import PostgresConversationStore

    return PostgresConversationStore()


__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "create_conversation_store",
]
