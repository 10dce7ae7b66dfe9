"""Completion clients backed by the Claude Agent SDK.

Two collaborators share one client: a live streaming completion for chat
turns and a single-shot completion used by the summarizer.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)
from claude_agent_sdk.types import StreamEvent

from chatrelay.config import settings
from chatrelay.errors import UpstreamError
from models import Message

logger = logging.getLogger(__name__)

# Denied as well, for CLI builds that ignore an empty --tools list
BUILTIN_TOOLS = (
    "Bash",
    "Edit",
    "Glob",
    "Grep",
    "LS",
    "MultiEdit",
    "NotebookEdit",
    "Read",
    "Task",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
    "Write",
)


class CompletionClient(Protocol):
    """Upstream model interface required by the chat pipeline."""

    def complete_stream(
        self, messages: Sequence[Message], model: str
    ) -> AsyncIterator[str]:
        """Yield reply text chunks. Raises on abnormal termination."""
        ...

    async def complete(
        self, prompt: str, model: str, system_prompt: str | None = None
    ) -> str:
        """Return a full reply to a single prompt. Raises on failure."""
        ...


def format_conversation_history(messages: Sequence[Message]) -> str:
    """Format non-system messages as a transcript for the prompt."""
    lines = []
    for msg in messages:
        if msg.role == "system":
            continue
        role = "User" if msg.role == "user" else "Assistant"
        content = msg.content
        if msg.image_url:
            content = f"{content}\n[Image: {msg.image_url}]"
        lines.append(f"{role}: {content}")

    return "\n\n".join(lines)


def build_prompt(messages: Sequence[Message]) -> tuple[str, str]:
    """Split a message list into (system_prompt, prompt).

    System messages (the base prompt and any history summary) are joined into
    the system prompt; the remaining turns become the transcript.
    """
    system_prompt = "\n\n".join(msg.content for msg in messages if msg.role == "system")
    history = format_conversation_history(messages)

    prompt = f"""Continue this conversation naturally, taking into account the full context.

{history}

Respond to the user's latest message."""
    return system_prompt, prompt


def _text_delta(event: dict) -> str | None:
    """Extract text from a raw content_block_delta stream event."""
    if event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta") or {}
    if delta.get("type") != "text_delta":
        return None
    return delta.get("text")


class ClaudeCompletionClient:
    """Completion client using the Claude Agent SDK query() API."""

    def __init__(self, oauth_token: str | None = None):
        self.oauth_token = settings.claude_oauth_token if oauth_token is None else oauth_token

    def _options(self, system_prompt: str, model: str, stream: bool) -> ClaudeAgentOptions:
        env = {"CLAUDE_CODE_OAUTH_TOKEN": self.oauth_token} if self.oauth_token else {}
        # Plain text completion: user text must never reach a tool.
        return ClaudeAgentOptions(
            model=model,
            system_prompt=system_prompt or None,
            tools=[],
            disallowed_tools=list(BUILTIN_TOOLS),
            max_turns=1,
            include_partial_messages=stream,
            env=env,
        )

    async def complete_stream(
        self, messages: Sequence[Message], model: str
    ) -> AsyncIterator[str]:
        """Stream reply text as it is generated."""
        system_prompt, prompt = build_prompt(messages)
        options = self._options(system_prompt, model, stream=True)

        saw_partial = False
        async for msg in query(prompt=prompt, options=options):
            if isinstance(msg, StreamEvent):
                text = _text_delta(msg.event)
                if text:
                    saw_partial = True
                    yield text
            elif isinstance(msg, AssistantMessage):
                # Full message repeats the partial deltas already relayed
                if saw_partial:
                    continue
                for block in msg.content:
                    if isinstance(block, TextBlock) and block.text:
                        yield block.text
            elif isinstance(msg, ResultMessage):
                if msg.is_error:
                    raise UpstreamError(msg.result or "Unknown error")

    async def complete(
        self, prompt: str, model: str, system_prompt: str | None = None
    ) -> str:
        """Return a single non-streamed reply."""
        options = self._options(system_prompt or "", model, stream=False)

        collected_text: list[str] = []
        async for msg in query(prompt=prompt, options=options):
            if isinstance(msg, AssistantMessage):
                for block in msg.content:
                    if isinstance(block, TextBlock):
                        collected_text.append(block.text)
            elif isinstance(msg, ResultMessage):
                if msg.is_error:
                    raise UpstreamError(msg.result or "Unknown error")

        text = "\n".join(collected_text).strip()
        if not text:
            raise UpstreamError("Empty completion")
        return text


def get_completion_client() -> CompletionClient:
    """Build the configured completion client."""
    if settings.use_mock_llm:
        from chatrelay.services.claude_mock import MockCompletionClient

        logger.info("Using mock completion client")
        return MockCompletionClient()
    return ClaudeCompletionClient()
