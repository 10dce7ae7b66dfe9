"""Conversation store interface."""

from typing import Protocol

from models import Conversation


class ConversationStore(Protocol):
    """Persistence collaborator for conversation documents."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def ensure_tables_exist(self) -> None: ...

    async def create(self, user_id: str, title: str | None = None) -> Conversation:
        """Create a conversation seeded with its system message."""
        ...

    async def load(self, conversation_id: str, user_id: str) -> Conversation:
        """Load an owned conversation. Raises NotFoundError."""
        ...

    async def save(self, conversation: Conversation) -> None:
        """Persist appended messages and counters. Raises ConflictError."""
        ...

    async def list_for_owner(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """List conversations, most recently updated first."""
        ...

    async def delete(self, conversation_id: str, user_id: str) -> None:
        """Delete an owned conversation. Raises NotFoundError."""
        ...
