"""Mock completion client for fast local runs without API calls.

Produces predictable canned replies, streamed word by word, so the chat
pipeline can be exercised end to end without Claude credentials.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Sequence

from chatrelay.errors import UpstreamError
from models import Message

logger = logging.getLogger(__name__)

GREETING_PATTERNS = [
    r"^(hi|hello|hey|greetings|good\s+(morning|afternoon|evening))[\s!.,]*$",
]

# Lets a developer exercise the in-band error path by hand
FAILURE_PATTERNS = [
    r"\[mock:fail\]",
]


class MockCompletionClient:
    """Provides predictable mock replies for testing."""

    def __init__(self, chunk_delay: float = 0.0):
        self.chunk_delay = chunk_delay

    @staticmethod
    def _detect_intent(text: str) -> str:
        """Detect intent from the latest user message."""
        lower_text = text.lower().strip()

        for pattern in FAILURE_PATTERNS:
            if re.search(pattern, lower_text):
                return "fail"

        for pattern in GREETING_PATTERNS:
            if re.search(pattern, lower_text, re.IGNORECASE):
                return "greeting"

        return "general"

    @staticmethod
    def _reply_for(messages: Sequence[Message]) -> tuple[str, str]:
        latest = next((msg.content for msg in reversed(messages) if msg.role == "user"), "")
        intent = MockCompletionClient._detect_intent(latest)
        logger.info(f"Mock Claude: detected intent '{intent}' from prompt")

        if intent == "greeting":
            return intent, "Hello! How can I help you today?"

        truncated = latest[:100] + "..." if len(latest) > 100 else latest
        return intent, f"I understood your message. Here's my response to: {truncated}"

    async def complete_stream(
        self, messages: Sequence[Message], model: str
    ) -> AsyncIterator[str]:
        """Stream a canned reply one word at a time."""
        intent, text = self._reply_for(messages)
        words = text.split(" ")
        for i, word in enumerate(words):
            if intent == "fail" and i == len(words) // 2:
                raise UpstreamError("Mock upstream failure")
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield word if i == 0 else f" {word}"

    async def complete(
        self, prompt: str, model: str, system_prompt: str | None = None
    ) -> str:
        """Return a canned summary of the prompt."""
        line_count = len([line for line in prompt.splitlines() if line.strip()])
        return f"[Mock summary of {line_count} lines of conversation]"
