"""PostgreSQL conversation store."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import asyncpg

from chatrelay.config import settings
from chatrelay.errors import ConflictError, NotFoundError, PersistenceError
from chatrelay.services.tokens import estimate_tokens
from models import Conversation, Message

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New Conversation',
    total_tokens_used BIGINT NOT NULL DEFAULT 0,
    last_summarized_at INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_user_id ON conversations(user_id);

-- Messages are append-only; position is the index in the conversation log
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    image_url TEXT,
    token_count INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (conversation_id, position)
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
"""


class PostgresConversationStore:
    """PostgreSQL-backed conversation store."""

    def __init__(self, database_url: str | None = None, system_prompt: str | None = None):
        self.database_url = database_url or settings.database_url
        self.system_prompt = system_prompt or settings.default_system_prompt
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        self._pool = await asyncpg.create_pool(
            self.database_url,
            min_size=2,
            max_size=10,
        )

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise PersistenceError("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(str(e)) from e

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def create(self, user_id: str, title: str | None = None) -> Conversation:
        """Create a new conversation seeded with the system prompt."""
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
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO conversations (id, user_id, title, total_tokens_used, last_summarized_at, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    conversation.id,
                    conversation.user_id,
                    conversation.title,
                    conversation.total_tokens_used,
                    conversation.last_summarized_at,
                    conversation.created_at,
                    conversation.updated_at,
                )
                await self._insert_messages(conn, conversation, start=0)
        conversation.mark_stored()
        return conversation

    async def load(self, conversation_id: str, user_id: str) -> Conversation:
        """Load an owned conversation with its messages."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE id = $1 AND user_id = $2",
                conversation_id,
                user_id,
            )
            if not row:
                raise NotFoundError("Conversation not found")
            message_rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY position ASC
                """,
                conversation_id,
            )
        conversation = self._row_to_conversation(row)
        conversation.messages = [self._row_to_message(r) for r in message_rows]
        conversation.mark_stored()
        return conversation

    async def save(self, conversation: Conversation):
        """Insert messages appended since load and update counters.

        Raises ConflictError if another writer saved since this copy was
        loaded, or the conversation was deleted.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                # Row lock serializes concurrent saves across processes
                locked = await conn.fetchval(
                    "SELECT id FROM conversations WHERE id = $1 FOR UPDATE",
                    conversation.id,
                )
                if locked is None:
                    raise ConflictError(f"Conversation {conversation.id} no longer exists")
                stored_count = await conn.fetchval(
                    "SELECT COUNT(*) FROM messages WHERE conversation_id = $1",
                    conversation.id,
                )
                if stored_count != conversation.stored_count:
                    raise ConflictError(f"Conversation {conversation.id} has newer messages")
                if len(conversation.messages) < stored_count:
                    raise ConflictError(f"Conversation {conversation.id} lost stored messages")

                result = await conn.execute(
                    """
                    UPDATE conversations
                    SET title = $1, total_tokens_used = $2, last_summarized_at = $3, updated_at = $4
                    WHERE id = $5
                    """,
                    conversation.title,
                    conversation.total_tokens_used,
                    conversation.last_summarized_at,
                    datetime.now(timezone.utc),
                    conversation.id,
                )
                if result == "UPDATE 0":
                    raise ConflictError(f"Conversation {conversation.id} no longer exists")

                await self._insert_messages(conn, conversation, start=stored_count)
        conversation.mark_stored()

    async def list_for_owner(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """List conversations for a user without their messages."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM conversations
                WHERE user_id = $1
                ORDER BY updated_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_conversation(row) for row in rows]

    async def delete(self, conversation_id: str, user_id: str):
        """Delete an owned conversation and its messages."""
        async with self.connection() as conn:
            result = await conn.execute(
                "DELETE FROM conversations WHERE id = $1 AND user_id = $2",
                conversation_id,
                user_id,
            )
        if result == "DELETE 0":
            raise NotFoundError("Conversation not found")

    async def _insert_messages(self, conn, conversation: Conversation, start: int):
        rows = [
            (
                str(uuid.uuid4()),
                conversation.id,
                position,
                msg.role,
                msg.content,
                msg.image_url,
                msg.token_count,
                msg.created_at,
            )
            for position, msg in enumerate(conversation.messages)
            if position >= start
        ]
        if not rows:
            return
        await conn.executemany(
            """
            INSERT INTO messages (id, conversation_id, position, role, content, image_url, token_count, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            rows,
        )

    def _row_to_conversation(self, row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            total_tokens_used=row["total_tokens_used"],
            last_summarized_at=row["last_summarized_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_message(self, row) -> Message:
        return Message(
            role=row["role"],
            content=row["content"],
            image_url=row["image_url"],
            token_count=row["token_count"],
            created_at=row["created_at"],
        )
