"""Streaming chat pipeline.

Runs one chat turn end to end:

1. ``ChatPipeline.begin_turn`` validates the request, appends the user message
   and persists it. Failures here are raised before any stream is opened.
2. ``ChatTurn.stream`` yields SSE records: a cached reply replayed in slices,
   or a live upstream completion relayed chunk by chunk. The assistant message
   is persisted only once the full reply is known. Failures after this point
   only surface in-band as ``[ERROR]`` and leave no assistant message behind.
"""

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from enum import Enum

from chatrelay.config import settings
from chatrelay.db.base import ConversationStore
from chatrelay.errors import ChatRelayError, UpstreamError, ValidationError
from chatrelay.services.context_window import ContextWindowManager, PreparedContext
from chatrelay.services.llm import CompletionClient
from chatrelay.services.response_cache import ResponseCache, create_message_hash
from chatrelay.services.tokens import estimate_tokens
from chatrelay.sse import StreamSentinel, encode_chunk, encode_sentinel
from models import Conversation, Message

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


class TurnOutcome(str, Enum):
    """Terminal state of a chat turn once its stream has opened."""

    PENDING = "pending"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class ClientDisconnected(Exception):
    """The client closed the channel mid-stream."""


class ConversationLocks:
    """Per-conversation locks serializing load-append-save cycles."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock


class ChatTurn:
    """A turn whose user message is persisted and whose stream is ready."""

    def __init__(
        self,
        pipeline: "ChatPipeline",
        conversation: Conversation,
        fingerprint: str,
        is_disconnected: DisconnectCheck | None = None,
    ):
        self.pipeline = pipeline
        self.conversation = conversation
        self.fingerprint = fingerprint
        self.is_disconnected = is_disconnected
        self.outcome = TurnOutcome.PENDING
        self.cache_hit = False
        self.reply: str | None = None
        self.closed = False

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    async def _ensure_open(self) -> None:
        if self.closed:
            raise ClientDisconnected("Stream already closed")
        if self.is_disconnected is not None and await self.is_disconnected():
            raise ClientDisconnected("Client disconnected")

    async def _channel_open(self) -> bool:
        try:
            await self._ensure_open()
        except ClientDisconnected:
            return False
        return True

    async def stream(self) -> AsyncIterator[str]:
        """Yield encoded SSE records until the turn terminates."""
        if self.closed:
            return
        try:
            cached = await self.pipeline.cache.get(self.fingerprint)
            if cached is not None:
                records = self._replay(cached)
            else:
                records = self._relay_upstream()
            async with aclosing(records):
                async for record in records:
                    yield record
        except ClientDisconnected:
            logger.info(f"Client left conversation {self.conversation_id} mid-stream")
            self.outcome = TurnOutcome.CANCELLED
        except (asyncio.CancelledError, GeneratorExit):
            if self.outcome is TurnOutcome.PENDING:
                self.outcome = TurnOutcome.CANCELLED
            raise
        finally:
            self.closed = True

    async def _replay(self, content: str) -> AsyncIterator[str]:
        """Replay a cached reply in fixed-size slices."""
        self.cache_hit = True
        logger.info(f"Cache hit for conversation {self.conversation_id}")
        size = self.pipeline.replay_slice_size
        for start in range(0, len(content), size):
            await self._ensure_open()
            yield encode_chunk(content[start : start + size])
            await asyncio.sleep(self.pipeline.replay_delay)

        self.reply = content
        await self.pipeline.append_assistant_message(self, content)
        self.outcome = TurnOutcome.DONE
        if await self._channel_open():
            yield encode_sentinel(StreamSentinel.DONE)

    async def _relay_upstream(self) -> AsyncIterator[str]:
        """Relay a live completion and persist it once complete."""
        accumulated: list[str] = []
        prepared: PreparedContext | None = None
        try:
            prepared = await self.pipeline.context_manager.prepare(self.conversation)
            chunks = self.pipeline.upstream_chunks(prepared.messages)
            async with aclosing(chunks):
                async for chunk in chunks:
                    await self._ensure_open()
                    accumulated.append(chunk)
                    yield encode_chunk(chunk)
        except ClientDisconnected:
            raise
        except Exception as e:
            logger.error(
                f"Upstream failed for conversation {self.conversation_id} "
                f"after {len(accumulated)} chunks: {e}"
            )
            self.outcome = TurnOutcome.ERROR
            if await self._channel_open():
                yield encode_sentinel(StreamSentinel.ERROR)
            return

        content = "".join(accumulated)
        self.reply = content
        if content:
            await self.pipeline.cache.put(self.fingerprint, content)
        await self.pipeline.append_assistant_message(self, content, prepared)
        self.outcome = TurnOutcome.DONE
        if await self._channel_open():
            yield encode_sentinel(StreamSentinel.DONE)


class ChatPipeline:
    """Coordinates persistence, caching, context assembly and upstream calls."""

    def __init__(
        self,
        store: ConversationStore,
        cache: ResponseCache,
        context_manager: ContextWindowManager,
        client: CompletionClient,
        model: str | None = None,
        cache_window: int | None = None,
        replay_slice_size: int | None = None,
        replay_delay: float | None = None,
        upstream_timeout: float | None = None,
        locks: ConversationLocks | None = None,
    ):
        self.store = store
        self.cache = cache
        self.context_manager = context_manager
        self.client = client
        self.model = model or settings.claude_model
        self.cache_window = cache_window if cache_window is not None else settings.cache_window
        self.replay_slice_size = replay_slice_size or settings.replay_slice_size
        self.replay_delay = (
            replay_delay if replay_delay is not None else settings.replay_delay_seconds
        )
        # 0 disables the deadline
        self.upstream_timeout = (
            upstream_timeout if upstream_timeout is not None else settings.upstream_timeout_seconds
        )
        self.locks = locks or ConversationLocks()

    async def begin_turn(
        self,
        owner_id: str,
        conversation_id: str,
        message: str,
        image_url: str | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> ChatTurn:
        """Append and persist the user message, returning a ready turn.

        Raises:
            ValidationError: conversation ID or message is missing.
            NotFoundError: conversation missing or not owned by owner_id.
            PersistenceError: the user message could not be stored.

        """
        if not conversation_id or not message:
            raise ValidationError("Missing conversationId or message")

        user_message = Message(
            role="user",
            content=message,
            image_url=image_url,
            token_count=estimate_tokens(message),
        )
        async with self.locks.get(conversation_id):
            conversation = await self.store.load(conversation_id, owner_id)
            conversation.append(user_message)
            await self.store.save(conversation)

        fingerprint = create_message_hash(conversation.messages, self.cache_window)
        return ChatTurn(self, conversation, fingerprint, is_disconnected)

    async def upstream_chunks(self, messages: list[Message]) -> AsyncIterator[str]:
        """Iterate upstream chunks under the overall deadline."""
        stream = self.client.complete_stream(messages, self.model)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.upstream_timeout if self.upstream_timeout else None
        try:
            while True:
                try:
                    async with asyncio.timeout_at(deadline):
                        chunk = await anext(stream)
                except StopAsyncIteration:
                    return
                except TimeoutError as e:
                    raise UpstreamError(
                        f"Upstream timed out after {self.upstream_timeout}s"
                    ) from e
                if not isinstance(chunk, str):
                    raise UpstreamError(f"Malformed chunk: {chunk!r}")
                if chunk:
                    yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def append_assistant_message(
        self,
        turn: ChatTurn,
        content: str,
        prepared: PreparedContext | None = None,
    ) -> None:
        """Persist the assistant reply. Failures are logged, not raised.

        The client has already received the content in-band, so a failed
        write leaves the stored log one message behind what was streamed.
        """
        assistant_message = Message(
            role="assistant",
            content=content,
            token_count=estimate_tokens(content),
        )
        owner_id = turn.conversation.user_id
        try:
            async with self.locks.get(turn.conversation_id):
                conversation = await self.store.load(turn.conversation_id, owner_id)
                conversation.append(assistant_message)
                if prepared is not None:
                    conversation.total_tokens_used += (
                        prepared.total_tokens + assistant_message.token_count
                    )
                    if prepared.summarized:
                        conversation.last_summarized_at = max(
                            conversation.last_summarized_at, prepared.summarized_through
                        )
                await self.store.save(conversation)
            turn.conversation = conversation
        except ChatRelayError as e:
            logger.error(
                f"Failed to persist assistant message for conversation "
                f"{turn.conversation_id}: {e}"
            )
