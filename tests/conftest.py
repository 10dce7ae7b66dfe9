"""Shared fixtures and fakes for chatrelay tests."""

import asyncio
from collections.abc import Sequence

import pytest

from chatrelay.db.memory import InMemoryConversationStore
from chatrelay.errors import UpstreamError
from chatrelay.services.chat_stream import ChatPipeline
from chatrelay.services.context_window import ContextWindowManager
from chatrelay.services.response_cache import ResponseCache
from chatrelay.services.summarizer import Summarizer
from models import Message


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedClient:
    """Completion client returning scripted chunks and summaries."""

    def __init__(
        self,
        chunks: Sequence[object] = ("Hello", " there", "!"),
        fail_after: int | None = None,
        hang_after: int | None = None,
        summary: str | None = "Condensed history.",
        summary_error: Exception | None = None,
    ):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.hang_after = hang_after
        self.summary = summary
        self.summary_error = summary_error
        self.stream_calls: list[list[Message]] = []
        self.complete_calls: list[dict] = []

    async def complete_stream(self, messages, model):
        self.stream_calls.append(list(messages))
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise UpstreamError("connection reset")
            if self.hang_after is not None and i == self.hang_after:
                await asyncio.Event().wait()
            yield chunk

    async def complete(self, prompt, model, system_prompt=None):
        self.complete_calls.append(
            {"prompt": prompt, "model": model, "system_prompt": system_prompt}
        )
        if self.summary_error is not None:
            raise self.summary_error
        return self.summary


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ResponseCache:
    return ResponseCache(ttl_seconds=3600, clock=clock)


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore(system_prompt="You are a helpful assistant.")


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


def build_pipeline(
    store,
    cache,
    client,
    token_budget: int = 900_000,
    tail_size: int = 20,
    upstream_timeout: float = 5,
) -> ChatPipeline:
    summarizer = Summarizer(client, model="haiku")
    context_manager = ContextWindowManager(
        summarizer,
        token_budget=token_budget,
        tail_size=tail_size,
        default_system_prompt="You are a helpful assistant.",
    )
    return ChatPipeline(
        store,
        cache,
        context_manager,
        client,
        model="sonnet",
        cache_window=3,
        replay_slice_size=20,
        replay_delay=0,
        upstream_timeout=upstream_timeout,
    )


@pytest.fixture
def pipeline(store, cache, client) -> ChatPipeline:
    return build_pipeline(store, cache, client)


async def collect(turn) -> list[str]:
    """Drain a turn's stream into a list of records."""
    return [record async for record in turn.stream()]
