"""Read-through cache in front of a conversation store.

Reads are served from memory once loaded. Every write goes to the backing
store first and then drops the cached entries it touched, so a failed write
never leaves the cache ahead of the store. Only writes made through this
wrapper are seen; the wrapper must be the store's single writer.

Each conversation (and the listing) carries a generation counter that every
write bumps. A read only fills the cache when the generation is unchanged
since the read began, so a read overlapping a write never caches the
pre-write snapshot.
"""

from datetime import datetime
from typing import Any, Iterable, Literal

from models import Conversation, ConversationSummary, Message

from chatrelay.db.base import ConversationStore


class CachedStore(ConversationStore):
    """Caches conversations and message lists per conversation id."""

    def __init__(self, backend: ConversationStore):
        self.backend = backend
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._listing: list[ConversationSummary] | None = None
        self._listing_limit = 0
        self._generations: dict[str, int] = {}
        self._listing_generation = 0
        self._epoch = 0  # Bumped by clear()

    async def connect(self) -> None:
        await self.backend.connect()

    async def disconnect(self) -> None:
        await self.backend.disconnect()
        self.clear()

    def clear(self) -> None:
        self._conversations.clear()
        self._messages.clear()
        self._listing = None
        self._epoch += 1

    def invalidate(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)
        self._generations[conversation_id] = self._generations.get(conversation_id, 0) + 1
        self._invalidate_listing()

    def _invalidate_listing(self) -> None:
        self._listing = None
        self._listing_generation += 1

    def _generation(self, conversation_id: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(conversation_id, 0)

    def _listing_version(self) -> tuple[int, int]:
        return self._epoch, self._listing_generation

    # ============= Reads =============

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        cached = self._conversations.get(conversation_id)
        if cached is not None:
            return cached.model_copy()

        generation = self._generation(conversation_id)
        conversation = await self.backend.get_conversation(conversation_id)
        if conversation is None:
            return None
        if self._generation(conversation_id) == generation:
            self._conversations[conversation_id] = conversation
        return conversation.model_copy()

    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        if self._listing is not None and self._listing_limit >= limit:
            return [c.model_copy() for c in self._listing[:limit]]

        version = self._listing_version()
        listing = await self.backend.list_conversations(limit)
        if self._listing_version() == version:
            self._listing = listing
            self._listing_limit = limit
        return [c.model_copy() for c in listing[:limit]]

    async def get_messages(self, conversation_id: str) -> list[Message]:
        cached = self._messages.get(conversation_id)
        if cached is not None:
            return [m.model_copy() for m in cached]

        generation = self._generation(conversation_id)
        messages = await self.backend.get_messages(conversation_id)
        if self._generation(conversation_id) == generation:
            self._messages[conversation_id] = messages
        return [m.model_copy() for m in messages]

    # ============= Writes =============

    async def create_conversation(self, title: str | None = None) -> Conversation:
        try:
            return await self.backend.create_conversation(title)
        finally:
            self._invalidate_listing()

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            return await self.backend.delete_conversation(conversation_id)
        finally:
            self.invalidate(conversation_id)

    async def append_message(
        self,
        conversation_id: str,
        role: Literal["user", "assistant"],
        content: str,
    ) -> Message:
        try:
            return await self.backend.append_message(conversation_id, role, content)
        finally:
            self.invalidate(conversation_id)

    async def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Conversation | None:
        try:
            return await self.backend.update_conversation(conversation_id, **fields)
        finally:
            self.invalidate(conversation_id)

    async def delete_messages(
        self, conversation_id: str, message_ids: Iterable[str]
    ) -> int:
        try:
            return await self.backend.delete_messages(conversation_id, message_ids)
        finally:
            self.invalidate(conversation_id)

    async def apply_compaction(
        self,
        conversation_id: str,
        summary: str,
        message_ids: Iterable[str],
        at: datetime,
    ) -> None:
        try:
            await self.backend.apply_compaction(conversation_id, summary, message_ids, at)
        finally:
            self.invalidate(conversation_id)
