"""Storage contract for conversations and their messages."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Literal

from models import Conversation, ConversationSummary, Message

# Fields callers may change through update_conversation()
UPDATABLE_FIELDS = frozenset({"title", "summary", "summary_updated_at"})


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update conversation fields: {sorted(unknown)}")


class ConversationStore(ABC):
    """Persistence for conversations, messages and rolling summaries.

    A failed write must leave the previous state intact. Backend failures are
    raised as ``PersistenceError``.
    """

    async def connect(self) -> None:
        """Open connections or files. Default: nothing to do."""

    async def disconnect(self) -> None:
        """Release resources. Default: nothing to do."""

    @abstractmethod
    async def create_conversation(self, title: str | None = None) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        """Conversations ordered by most recently updated first."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages, oldest first."""

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        role: Literal["user", "assistant"],
        content: str,
    ) -> Message:
        """Append a message and touch the conversation's ``updated_at``."""

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Conversation | None:
        """Update ``title``, ``summary`` or ``summary_updated_at``."""

    @abstractmethod
    async def delete_messages(
        self, conversation_id: str, message_ids: Iterable[str]
    ) -> int:
        """Delete the given messages; returns how many were removed."""

    @abstractmethod
    async def apply_compaction(
        self,
        conversation_id: str,
        summary: str,
        message_ids: Iterable[str],
        at: datetime,
    ) -> None:
        """Replace the summary and delete the summarized messages atomically."""
