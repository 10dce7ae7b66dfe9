"""Context window assembly under a token budget.

Builds the exact message list sent upstream. When the estimated total exceeds
the budget, everything before the most recent tail is folded into a single
summary message; the tail itself is always forwarded verbatim. Only the
upstream request is affected, the stored conversation keeps its full log.
"""

import logging
from dataclasses import dataclass

from chatrelay.config import settings
from chatrelay.services.summarizer import Summarizer
from chatrelay.services.tokens import estimate_message_tokens, estimate_tokens
from models import Conversation, Message

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 900_000
DEFAULT_TAIL_SIZE = 20


@dataclass
class PreparedContext:
    """Messages to send upstream and their estimated size."""

    messages: list[Message]
    total_tokens: int
    summarized: bool = False
    summarized_through: int = 0  # index in the stored log where the tail starts


class ContextWindowManager:
    """Applies the budget policy to a conversation's history."""

    def __init__(
        self,
        summarizer: Summarizer,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        tail_size: int = DEFAULT_TAIL_SIZE,
        default_system_prompt: str | None = None,
    ):
        self.summarizer = summarizer
        self.token_budget = token_budget
        self.tail_size = tail_size
        self.default_system_prompt = default_system_prompt or settings.default_system_prompt

    def default_system_message(self) -> Message:
        content = self.default_system_prompt
        return Message(role="system", content=content, token_count=estimate_tokens(content))

    async def prepare(self, conversation: Conversation) -> PreparedContext:
        """Return the (possibly reduced) message list and its token total."""
        messages = list(conversation.messages)
        if not any(msg.role == "system" for msg in messages):
            messages.insert(0, self.default_system_message())

        total = estimate_message_tokens(messages)
        if total <= self.token_budget or len(messages) <= self.tail_size:
            return PreparedContext(messages=messages, total_tokens=total)

        tail = messages[-self.tail_size :]
        overflow = messages[: -self.tail_size]

        if overflow[0].role == "system":
            system_message = overflow[0]
            overflow = overflow[1:]
        else:
            system_message = self.default_system_message()

        if not overflow:
            # Only the system message precedes the tail; nothing to fold
            return PreparedContext(messages=messages, total_tokens=total)

        logger.info(
            f"Conversation {conversation.id} over budget ({total} > {self.token_budget} tokens), "
            f"summarizing {len(overflow)} messages"
        )
        summary = await self.summarizer.summarize(overflow)

        reduced = [system_message, summary, *tail]
        reduced_total = estimate_message_tokens(reduced)
        if reduced_total > self.token_budget:
            logger.warning(
                f"Conversation {conversation.id} still over budget after summarization "
                f"({reduced_total} tokens); recent tail forwarded verbatim"
            )

        return PreparedContext(
            messages=reduced,
            total_tokens=reduced_total,
            summarized=True,
            summarized_through=len(conversation.messages) - self.tail_size,
        )
