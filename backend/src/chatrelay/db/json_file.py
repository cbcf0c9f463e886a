"""Single-document JSON store.

Layout of ``conversations.json``::

    {"conversations": {"<id>": {"title": ..., "summary": ..., "messages": [...]}}}

Every operation reads the document from disk and every write replaces it
atomically, so the file is the only state. Put ``CachedStore`` in front to
avoid the re-reads.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal

from models import Conversation, ConversationSummary, Message
from models.conversation import new_message_id

from chatrelay.db.base import ConversationStore, check_update_fields
from chatrelay.errors import ConversationNotFoundError, PersistenceError

logger = logging.getLogger(__name__)

Document = dict[str, Any]


class JsonFileStore(ConversationStore):
    """Conversation store persisted to one JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        # Serializes read-modify-write cycles on the file
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._ensure_file)

    def _ensure_file(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write({"conversations": {}})
                logger.info(f"Created conversation store at {self.path}")
                return
        except OSError as e:
            raise PersistenceError("Could not initialize store", str(e)) from e

        doc = self._read()
        fixed = self._stamp_messages(doc)
        if fixed:
            self._write(doc)
            logger.info(f"Assigned ids to {fixed} stored messages in {self.path}")

    @staticmethod
    def _stamp_messages(doc: Document) -> int:
        """Give stored messages lacking an id a permanent id and timestamp.

        Older files keep only ``role``, ``content`` and a millisecond ``ts``.
        """
        fixed = 0
        for raw in doc["conversations"].values():
            for message in raw.get("messages", []):
                if message.get("id"):
                    continue
                message["id"] = new_message_id()
                if "created_at" not in message:
                    ts = message.pop("ts", None)
                    created = (
                        datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
                        if isinstance(ts, (int, float))
                        else datetime.now(timezone.utc)
                    )
                    message["created_at"] = created.isoformat()
                fixed += 1
        return fixed

    def _read(self) -> Document:
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"conversations": {}}
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError("Could not read store", str(e)) from e
        doc.setdefault("conversations", {})
        return doc

    def _write(self, doc: Document) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(doc, f, ensure_ascii=False, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError("Could not write store", str(e)) from e

    async def _load(self) -> Document:
        return await asyncio.to_thread(self._read)

    async def _save(self, doc: Document) -> None:
        await asyncio.to_thread(self._write, doc)

    # ============= Row conversion =============

    @staticmethod
    def _to_conversation(conversation_id: str, raw: dict[str, Any]) -> Conversation:
        fields = {k: v for k, v in raw.items() if k != "messages"}
        return Conversation(id=conversation_id, **fields)

    @staticmethod
    def _to_record(conversation: Conversation, messages: list[dict]) -> dict[str, Any]:
        record = conversation.model_dump(mode="json", exclude={"id"})
        record["messages"] = messages
        return record

    @staticmethod
    def _to_message(conversation_id: str, raw: dict[str, Any]) -> Message:
        if not raw.get("id"):
            # Ids are assigned on connect
            raise PersistenceError(
                "Malformed message record", f"message without id in {conversation_id}"
            )
        return Message(conversation_id=conversation_id, **raw)

    @staticmethod
    def _require(doc: Document, conversation_id: str) -> dict[str, Any]:
        raw = doc["conversations"].get(conversation_id)
        if raw is None:
            raise ConversationNotFoundError(conversation_id)
        return raw

    # ============= Conversation Operations =============

    async def create_conversation(self, title: str | None = None) -> Conversation:
        conversation = Conversation()
        if title:
            conversation.title = title
        async with self._lock:
            doc = await self._load()
            doc["conversations"][conversation.id] = self._to_record(conversation, [])
            await self._save(doc)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        doc = await self._load()
        raw = doc["conversations"].get(conversation_id)
        if raw is None:
            return None
        return self._to_conversation(conversation_id, raw)

    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        doc = await self._load()
        conversations = [
            self._to_conversation(cid, raw) for cid, raw in doc["conversations"].items()
        ]
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return [
            ConversationSummary(id=c.id, title=c.title, updated_at=c.updated_at)
            for c in conversations[:limit]
        ]

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock:
            doc = await self._load()
            if doc["conversations"].pop(conversation_id, None) is None:
                return False
            await self._save(doc)
        return True

    async def update_conversation(
        self, conversation_id: str, **fields: Any
    ) -> Conversation | None:
        check_update_fields(fields)
        async with self._lock:
            doc = await self._load()
            raw = doc["conversations"].get(conversation_id)
            if raw is None:
                return None
            conversation = self._to_conversation(conversation_id, raw).model_copy(
                update={**fields, "updated_at": datetime.now(timezone.utc)}
            )
            doc["conversations"][conversation_id] = self._to_record(
                conversation, raw.get("messages", [])
            )
            await self._save(doc)
        return conversation

    # ============= Message Operations =============

    async def get_messages(self, conversation_id: str) -> list[Message]:
        doc = await self._load()
        raw = doc["conversations"].get(conversation_id)
        if raw is None:
            return []
        return [self._to_message(conversation_id, m) for m in raw.get("messages", [])]

    async def append_message(
        self,
        conversation_id: str,
        role: Literal["user", "assistant"],
        content: str,
    ) -> Message:
        message = Message(conversation_id=conversation_id, role=role, content=content)
        async with self._lock:
            doc = await self._load()
            raw = self._require(doc, conversation_id)
            raw.setdefault("messages", []).append(
                message.model_dump(mode="json", exclude={"conversation_id"})
            )
            raw["updated_at"] = message.created_at.isoformat()
            await self._save(doc)
        return message

    async def delete_messages(
        self, conversation_id: str, message_ids: Iterable[str]
    ) -> int:
        doomed = set(message_ids)
        async with self._lock:
            doc = await self._load()
            raw = doc["conversations"].get(conversation_id)
            if raw is None:
                return 0
            messages = raw.get("messages", [])
            raw["messages"] = [m for m in messages if m.get("id") not in doomed]
            removed = len(messages) - len(raw["messages"])
            if removed:
                await self._save(doc)
        return removed

    async def apply_compaction(
        self,
        conversation_id: str,
        summary: str,
        message_ids: Iterable[str],
        at: datetime,
    ) -> None:
        doomed = set(message_ids)
        async with self._lock:
            doc = await self._load()
            raw = self._require(doc, conversation_id)
            raw["messages"] = [
                m for m in raw.get("messages", []) if m.get("id") not in doomed
            ]
            raw["summary"] = summary
            raw["summary_updated_at"] = at.isoformat()
            raw["updated_at"] = at.isoformat()
            # One replace of the whole document: both changes land or neither
            await self._save(doc)
