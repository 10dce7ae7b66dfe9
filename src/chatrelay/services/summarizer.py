"""Conversation summarization.

Condenses a run of older messages into one system message so the context
window can keep recent turns verbatim. Summarization never fails from the
caller's point of view; errors degrade to a deterministic fallback.
"""

import logging
from collections.abc import Sequence

from chatrelay.config import settings
from chatrelay.errors import SummarizationError
from chatrelay.services.llm import CompletionClient
from chatrelay.services.tokens import estimate_tokens
from models import Message

logger = logging.getLogger(__name__)

MAX_MESSAGES_TO_SUMMARIZE = 20

SUMMARY_INSTRUCTION = (
    "Condense the following conversation into a concise summary. "
    "Preserve the information needed for future context: important facts "
    "(names, preferences, decisions), key topics, commitments and open questions."
)


def fallback_summary(message_count: int) -> str:
    """Deterministic summary used when the completion call fails."""
    return f"Previous conversation had {message_count} messages."


def format_transcript(messages: Sequence[Message]) -> str:
    """Format messages for summarization."""
    formatted = []
    for msg in messages:
        role = {"user": "User", "assistant": "Assistant"}.get(msg.role, "System")
        formatted.append(f"{role}: {msg.content}")

    return "\n\n".join(formatted)


class Summarizer:
    """Summarizes overflow history with a single completion call."""

    def __init__(
        self,
        client: CompletionClient,
        model: str | None = None,
        max_messages: int = MAX_MESSAGES_TO_SUMMARIZE,
    ):
        self.client = client
        self.model = model or settings.claude_summary_model
        self.max_messages = max_messages

    async def _complete(self, messages: Sequence[Message]) -> str:
        prompt = f"""Conversation to summarize:
{format_transcript(messages)}

Write a concise summary that captures the essential context."""
        try:
            text = await self.client.complete(prompt, self.model, system_prompt=SUMMARY_INSTRUCTION)
        except Exception as e:
            raise SummarizationError(str(e)) from e
        if not text or not text.strip():
            raise SummarizationError("Empty summary")
        return text.strip()

    async def summarize(self, messages: Sequence[Message]) -> Message:
        """Return a system message condensing the given messages."""
        window = list(messages)[-self.max_messages :] if self.max_messages > 0 else []

        try:
            summary = await self._complete(window)
            content = f"Summary of earlier conversation:\n{summary}"
        except SummarizationError as e:
            logger.error(f"Failed to summarize {len(messages)} messages: {e}")
            content = fallback_summary(len(messages))

        return Message(role="system", content=content, token_count=estimate_tokens(content))
