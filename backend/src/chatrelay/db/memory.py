"""In-process conversation store, used for tests and throwaway runs."""

from datetime import datetime, timezone
from typing import Any, Iterable, Literal

from models import Conversation, ConversationSummary, Message

from chatrelay.db.base import ConversationStore, check_update_fields
from chatrelay.errors import ConversationNotFoundError


class MemoryStore(ConversationStore):
    """Dict-backed store. Returned models are copies, never live state."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    async def create_conversation(self, title: str | None = None) -> Conversation:
        conversation = Conversation()
        if title:
            conversation.title = title
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        return conversation.model_copy()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        ordered = sorted(
            self._conversations.values(), key=lambda c: c.updated_at, reverse=True
        )
        return [
            ConversationSummary(id=c.id, title=c.title, updated_at=c.updated_at)
            for c in ordered[:limit]
        ]

    async def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self._conversations:
            return False
        del self._conversations[conversation_id]
        self._messages.pop(conversation_id, None)
        return True

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return [m.model_copy() for m in self._messages.get(conversation_id, [])]

    async def append_message(
        self,
        conversation_id: str,
        role: Literal["user", "assistant"],
        content: str,
    ) -> Message:
        conversation = self._require(conversation_id)
        message = Message(conversation_id=conversation_id, role=role, content=content)
        self._messages[conversation_id].append(message)
        conversation.updated_at = message.created_at
        return message.model_copy()

    async def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Conversation | None:
        check_update_fields(fields)
        conversation = self._conversations.get(conversation_id)
        if not conversation:
            return None
        updated = conversation.model_copy(
            update={**fields, "updated_at": datetime.now(timezone.utc)}
        )
        self._conversations[conversation_id] = updated
        return updated.model_copy()

    async def delete_messages(
        self, conversation_id: str, message_ids: Iterable[str]
    ) -> int:
        doomed = set(message_ids)
        messages = self._messages.get(conversation_id, [])
        kept = [m for m in messages if m.id not in doomed]
        self._messages[conversation_id] = kept
        return len(messages) - len(kept)

    async def apply_compaction(
        self,
        conversation_id: str,
        summary: str,
        message_ids: Iterable[str],
        at: datetime,
    ) -> None:
        conversation = self._require(conversation_id)
        doomed = set(message_ids)
        # No awaits below: the swap is atomic with respect to other tasks
        self._messages[conversation_id] = [
            m for m in self._messages[conversation_id] if m.id not in doomed
        ]
        self._conversations[conversation_id] = conversation.model_copy(
            update={"summary": summary, "summary_updated_at": at, "updated_at": at}
        )

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if not conversation:
            raise ConversationNotFoundError(conversation_id)
        return conversation
