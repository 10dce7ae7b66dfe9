"""API-specific request and response models."""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field

from models import Conversation


class ConversationSummary(BaseModel):
    """Conversation metadata without its message log."""

    id: str
    title: str
    total_tokens_used: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            total_tokens_used=conversation.total_tokens_used,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationListResponse(BaseModel):
    """Response model for list of conversations."""

    conversations: list[ConversationSummary]
    total: int


class CreateConversationRequest(BaseModel):
    """Request model for creating a conversation."""

    title: str | None = Field(None, description="Optional conversation title")


class ChatRequest(BaseModel):
    """Request model for a streamed chat turn.

    Fields are optional so that a missing value is reported as a 400 by the
    pipeline instead of a schema error.
    """

    conversation_id: str | None = Field(
        None,
        description="Existing conversation ID",
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    message: str | None = Field(None, description="User message")
    image_url: str | None = Field(
        None,
        description="URL of an already uploaded image",
        validation_alias=AliasChoices("image_url", "imageUrl"),
    )
