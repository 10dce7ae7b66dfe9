"""Shared Pydantic models for chatrelay."""

from models.conversation import CacheEntry, Conversation, Message, Role

__all__ = [
    "CacheEntry",
    "Conversation",
    "Message",
    "Role",
]
