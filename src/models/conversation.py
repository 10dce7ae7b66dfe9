"""Conversation, message and cache entry models."""

from datetime import datetime, timezone
from typing import Literal
import uuid

from pydantic import BaseModel, Field, PrivateAttr

Role = Literal["system", "user", "assistant"]


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A single message in a conversation."""

    role: Role = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    image_url: str | None = Field(None, description="Attached image URL")
    token_count: int | None = Field(None, description="Estimated token count")
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")

    model_config = {"frozen": True}


class Conversation(BaseModel):
    """A conversation thread owned by a single user."""

    id: str = Field(default_factory=_uuid, description="Unique conversation ID")
    user_id: str = Field(..., description="Owner user ID")
    title: str = Field("New Conversation", description="Conversation title")
    messages: list[Message] = Field(default_factory=list, description="Ordered message log")
    total_tokens_used: int = Field(0, description="Estimated tokens consumed by upstream calls")
    last_summarized_at: int = Field(
        0, description="Message index up to which history was folded into a summary"
    )
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_now, description="Last update timestamp")

    # Message count the store held when this copy was loaded or last saved
    _stored_count: int = PrivateAttr(default=0)

    @property
    def stored_count(self) -> int:
        return self._stored_count

    def mark_stored(self) -> None:
        """Record that the store now holds exactly this message log."""
        self._stored_count = len(self.messages)

    def append(self, message: Message) -> None:
        """Append a message and bump updated_at."""
        self.messages.append(message)
        self.updated_at = _now()


class CacheEntry(BaseModel):
    """A cached assistant reply keyed by a conversation fingerprint."""

    fingerprint: str = Field(..., description="Hash of the trailing message window")
    content: str = Field(..., description="Cached reply text")
    expires_at: float = Field(..., description="Clock value after which the entry is stale")

    model_config = {"frozen": True}
