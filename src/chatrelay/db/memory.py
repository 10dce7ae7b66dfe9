"""In-process conversation store for tests and local development."""

import asyncio

from chatrelay.config import settings
from chatrelay.errors import ConflictError, NotFoundError
from chatrelay.services.tokens import estimate_tokens
from models import Conversation, Message


class InMemoryConversationStore:
    """Keeps conversation documents in a dict, returning deep copies."""

    def __init__(self, system_prompt: str | None = None):
        self.system_prompt = system_prompt or settings.default_system_prompt
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def ensure_tables_exist(self) -> None:
        return None

    async def create(self, user_id: str, title: str | None = None) -> Conversation:
        conversation = Conversation(user_id=user_id)
        if title:
            conversation.title = title
        conversation.messages.append(
            Message(
                role="system",
                content=self.system_prompt,
                token_count=estimate_tokens(self.system_prompt),
            )
        )
        conversation.mark_stored()
        async with self._lock:
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def load(self, conversation_id: str, user_id: str) -> Conversation:
        async with self._lock:
            stored = self._conversations.get(conversation_id)
            if stored is None or stored.user_id != user_id:
                raise NotFoundError("Conversation not found")
            conversation = stored.model_copy(deep=True)
        conversation.mark_stored()
        return conversation

    async def save(self, conversation: Conversation) -> None:
        async with self._lock:
            stored = self._conversations.get(conversation.id)
            if stored is None:
                raise ConflictError(f"Conversation {conversation.id} no longer exists")
            if len(stored.messages) != conversation.stored_count:
                raise ConflictError(f"Conversation {conversation.id} has newer messages")
            if len(conversation.messages) < conversation.stored_count:
                raise ConflictError(f"Conversation {conversation.id} lost stored messages")
            conversation.mark_stored()
            self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def list_for_owner(self, user_id: str, limit: int = 50) -> list[Conversation]:
        async with self._lock:
            owned = [c for c in self._conversations.values() if c.user_id == user_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy(deep=True) for c in owned[:limit]]

    async def delete(self, conversation_id: str, user_id: str) -> None:
        async with self._lock:
            stored = self._conversations.get(conversation_id)
            if stored is None or stored.user_id != user_id:
                raise NotFoundError("Conversation not found")
            del self._conversations[conversation_id]
