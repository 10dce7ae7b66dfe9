"""Tests for the completion clients."""

from dataclasses import dataclass, field
from typing import Any
from unittest.mock import patch

import pytest

from chatrelay.errors import UpstreamError
from chatrelay.services import llm
from chatrelay.services.claude_mock import MockCompletionClient
from chatrelay.services.llm import ClaudeCompletionClient, build_prompt, format_conversation_history
from models import Message


@dataclass
class FakeTextBlock:
    text: str


@dataclass
class FakeAssistantMessage:
    content: list[FakeTextBlock]


@dataclass
class FakeResultMessage:
    result: str | None = None
    is_error: bool = False


@dataclass
class FakeStreamEvent:
    event: dict[str, Any] = field(default_factory=dict)


def _delta(text: str) -> FakeStreamEvent:
    return FakeStreamEvent(
        event={"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}
    )


def _fake_query(*responses):
    calls = []

    async def query(prompt, options):
        calls.append({"prompt": prompt, "options": options})
        for response in responses:
            yield response

    return query, calls


def _patched(query):
    return [
        patch.object(llm, "query", query),
        patch.object(llm, "TextBlock", FakeTextBlock),
        patch.object(llm, "AssistantMessage", FakeAssistantMessage),
        patch.object(llm, "ResultMessage", FakeResultMessage),
        patch.object(llm, "StreamEvent", FakeStreamEvent),
    ]


class _Patches:
    def __init__(self, query):
        self.patches = _patched(query)

    def __enter__(self):
        for p in self.patches:
            p.start()

    def __exit__(self, *exc):
        for p in reversed(self.patches):
            p.stop()


MESSAGES = [
    Message(role="system", content="Be terse."),
    Message(role="system", content="Summary of earlier conversation:\nThey met."),
    Message(role="user", content="hi"),
    Message(role="assistant", content="hello"),
    Message(role="user", content="how are you?", image_url="/uploads/cat.png"),
]


class TestPromptBuilding:
    """Test how message lists become prompts."""

    def test_system_messages_become_system_prompt(self):
        system_prompt, prompt = build_prompt(MESSAGES)

        assert system_prompt == "Be terse.\n\nSummary of earlier conversation:\nThey met."
        assert "Be terse." not in prompt

    def test_transcript_keeps_order_and_roles(self):
        history = format_conversation_history(MESSAGES)

        assert history.index("User: hi") < history.index("Assistant: hello")
        assert history.endswith("User: how are you?\n[Image: /uploads/cat.png]")


class TestClaudeCompletionClient:
    """Test the SDK-backed client with a patched query()."""

    @pytest.mark.asyncio
    async def test_stream_relays_text_deltas(self):
        query, calls = _fake_query(
            _delta("Hel"),
            FakeStreamEvent(event={"type": "message_start"}),
            _delta("lo"),
            FakeAssistantMessage(content=[FakeTextBlock(text="Hello")]),
            FakeResultMessage(result="Hello"),
        )
        client = ClaudeCompletionClient(oauth_token="")

        with _Patches(query):
            chunks = [c async for c in client.complete_stream(MESSAGES, "sonnet")]

        assert chunks == ["Hel", "lo"]
        options = calls[0]["options"]
        assert options.model == "sonnet"
        assert options.include_partial_messages is True

    @pytest.mark.asyncio
    async def test_stream_falls_back_to_full_message(self):
        query, _ = _fake_query(
            FakeAssistantMessage(content=[FakeTextBlock(text="Whole reply")]),
            FakeResultMessage(result="Whole reply"),
        )
        client = ClaudeCompletionClient(oauth_token="")

        with _Patches(query):
            chunks = [c async for c in client.complete_stream(MESSAGES, "sonnet")]

        assert chunks == ["Whole reply"]

    @pytest.mark.asyncio
    async def test_stream_error_result_raises(self):
        query, _ = _fake_query(_delta("par"), FakeResultMessage(result="overloaded", is_error=True))
        client = ClaudeCompletionClient(oauth_token="")

        with _Patches(query):
            with pytest.raises(UpstreamError, match="overloaded"):
                _ = [c async for c in client.complete_stream(MESSAGES, "sonnet")]

    @pytest.mark.asyncio
    async def test_complete_collects_text(self):
        query, calls = _fake_query(
            FakeAssistantMessage(content=[FakeTextBlock(text="A summary.")]),
            FakeResultMessage(result="A summary."),
        )
        client = ClaudeCompletionClient(oauth_token="token-123")

        with _Patches(query):
            text = await client.complete("Summarize this", "haiku", system_prompt="Condense")

        assert text == "A summary."
        assert calls[0]["prompt"] == "Summarize this"
        assert calls[0]["options"].system_prompt == "Condense"
        assert calls[0]["options"].env == {"CLAUDE_CODE_OAUTH_TOKEN": "token-123"}

    @pytest.mark.parametrize("stream", [True, False])
    def test_options_disable_tools(self, stream):
        client = ClaudeCompletionClient(oauth_token="")

        options = client._options("Be terse.", "sonnet", stream=stream)

        assert options.tools == []
        assert not options.allowed_tools
        assert {"Bash", "Write", "Edit", "WebFetch"} <= set(options.disallowed_tools)
        assert options.permission_mode != "bypassPermissions"
        assert options.max_turns == 1

    @pytest.mark.asyncio
    async def test_complete_empty_raises(self):
        query, _ = _fake_query(FakeResultMessage(result=""))
        client = ClaudeCompletionClient(oauth_token="")

        with _Patches(query):
            with pytest.raises(UpstreamError):
                await client.complete("Summarize this", "haiku")


class TestMockCompletionClient:
    """Test the canned local client."""

    @pytest.mark.asyncio
    async def test_greeting(self):
        client = MockCompletionClient()
        messages = [Message(role="user", content="hello")]

        reply = "".join([c async for c in client.complete_stream(messages, "sonnet")])

        assert reply == "Hello! How can I help you today?"

    @pytest.mark.asyncio
    async def test_general_echoes_message(self):
        client = MockCompletionClient()
        messages = [Message(role="user", content="Tell me about tides")]

        reply = "".join([c async for c in client.complete_stream(messages, "sonnet")])

        assert reply == "I understood your message. Here's my response to: Tell me about tides"

    @pytest.mark.asyncio
    async def test_failure_marker_raises_mid_stream(self):
        client = MockCompletionClient()
        messages = [Message(role="user", content="please [mock:fail] now")]
        received = []

        with pytest.raises(UpstreamError):
            async for chunk in client.complete_stream(messages, "sonnet"):
                received.append(chunk)

        assert received

    @pytest.mark.asyncio
    async def test_complete_returns_summary(self):
        client = MockCompletionClient()

        text = await client.complete("User: a\n\nAssistant: b", "haiku")

        assert text == "[Mock summary of 2 lines of conversation]"
