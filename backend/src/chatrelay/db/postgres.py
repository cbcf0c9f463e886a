"""PostgreSQL conversation store."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Literal

import asyncpg

from models import Conversation, ConversationSummary, Message

from chatrelay.db.base import ConversationStore, check_update_fields
from chatrelay.errors import ConversationNotFoundError, PersistenceError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    summary_updated_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at DESC);

-- seq breaks ties between messages created in the same microsecond
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    seq BIGSERIAL,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at, seq);
"""


class PostgresStore(ConversationStore):
    """Conversation store backed by an asyncpg pool."""

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool and make sure the schema exists."""
        try:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError("Could not connect to database", str(e)) from e
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool; database errors become PersistenceError."""
        if not self._pool:
            raise PersistenceError("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError("Database operation failed", str(e)) from e

    # ============= Conversation Operations =============

    async def create_conversation(self, title: str | None = None) -> Conversation:
        """Create a new conversation."""
        conversation = Conversation()
        if title:
            conversation.title = title
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO conversations (id, title, summary, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                conversation.id,
                conversation.title,
                conversation.summary,
                conversation.created_at,
                conversation.updated_at,
            )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE id = $1", conversation_id
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        """List conversations, most recently updated first."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, title, updated_at FROM conversations
                ORDER BY updated_at DESC
                LIMIT $1
                """,
                limit,
            )
        return [
            ConversationSummary(id=row["id"], title=row["title"], updated_at=row["updated_at"])
            for row in rows
        ]

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self.connection() as conn:
            result = await conn.execute(
                "DELETE FROM conversations WHERE id = $1", conversation_id
            )
        return result.endswith(" 1")

    async def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Conversation | None:
        """Update conversation fields."""
        check_update_fields(fields)
        updates = []
        params: list[Any] = []
        param_idx = 1

        for name, value in fields.items():
            updates.append(f"{name} = ${param_idx}")
            params.append(value)
            param_idx += 1

        updates.append(f"updated_at = ${param_idx}")
        params.append(datetime.now(timezone.utc))
        param_idx += 1

        params.append(conversation_id)

        async with self.connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE conversations SET {', '.join(updates)} WHERE id = ${param_idx} RETURNING *",
                *params,
            )
        if not row:
            return None
        return self._row_to_conversation(row)

    def _row_to_conversation(self, row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            summary=row["summary"] or "",
            summary_updated_at=row["summary_updated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Message Operations =============

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """Get all messages for a conversation, oldest first."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at ASC, seq ASC
                """,
                conversation_id,
            )
        return [
            Message(
                id=row["id"],
                conversation_id=row["conversation_id"],
                role=row["role"],  # type: ignore
                content=row["content"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def append_message(
        self,
        conversation_id: str,
        role: Literal["user", "assistant"],
        content: str,
    ) -> Message:
        """Insert a message and touch the conversation."""
        message = Message(conversation_id=conversation_id, role=role, content=content)
        async with self.connection() as conn:
            async with conn.transaction():
                touched = await conn.execute(
                    "UPDATE conversations SET updated_at = $1 WHERE id = $2",
                    message.created_at,
                    conversation_id,
                )
                if not touched.endswith(" 1"):
                    raise ConversationNotFoundError(conversation_id)
                await conn.execute(
                    """
                    INSERT INTO messages (id, conversation_id, role, content, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    message.id,
                    message.conversation_id,
                    message.role,
                    message.content,
                    message.created_at,
                )
        return message

    async def delete_messages(
        self, conversation_id: str, message_ids: Iterable[str]
    ) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        async with self.connection() as conn:
            result = await conn.execute(
                "DELETE FROM messages WHERE conversation_id = $1 AND id = ANY($2::text[])",
                conversation_id,
                ids,
            )
        return int(result.split()[-1])

    async def apply_compaction(
        self,
        conversation_id: str,
        summary: str,
        message_ids: Iterable[str],
        at: datetime,
    ) -> None:
        """Store the new summary and drop the summarized messages in one transaction."""
        ids = list(message_ids)
        async with self.connection() as conn:
            async with conn.transaction():
                updated = await conn.execute(
                    """
                    UPDATE conversations
                    SET summary = $1, summary_updated_at = $2, updated_at = $2
                    WHERE id = $3
                    """,
                    summary,
                    at,
                    conversation_id,
                )
                if not updated.endswith(" 1"):
                    raise ConversationNotFoundError(conversation_id)
                await conn.execute(
                    "DELETE FROM messages WHERE conversation_id = $1 AND id = ANY($2::text[])",
                    conversation_id,
                    ids,
                )
