"""Tests for the conversation store backends and the cache layer."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from chatrelay.config import Settings
from chatrelay.db import CachedStore, JsonFileStore, MemoryStore, PostgresStore, create_store
from chatrelay.errors import ConversationNotFoundError, PersistenceError
from models import DEFAULT_TITLE


@pytest.fixture(params=["memory", "json", "cached-json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    store = JsonFileStore(tmp_path / "conversations.json")
    if request.param == "cached-json":
        return CachedStore(store)
    return store


class TestConversationStore:
    """Behaviour every backend shares."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()

        loaded = await any_store.get_conversation(conversation.id)
        assert loaded.id == conversation.id
        assert loaded.title == DEFAULT_TITLE
        assert loaded.summary == ""
        assert loaded.summary_updated_at is None
        assert conversation.id.startswith("c_")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, any_store):
        await any_store.connect()
        assert await any_store.get_conversation("c_missing") is None
        assert await any_store.get_messages("c_missing") == []
        assert await any_store.update_conversation("c_missing", title="x") is None
        assert await any_store.delete_conversation("c_missing") is False
        with pytest.raises(ConversationNotFoundError):
            await any_store.append_message("c_missing", "user", "hello")

    @pytest.mark.asyncio
    async def test_append_then_read_preserves_order(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()

        first = await any_store.append_message(conversation.id, "user", "first")
        second = await any_store.append_message(conversation.id, "assistant", "second")
        third = await any_store.append_message(conversation.id, "user", "third")

        messages = await any_store.get_messages(conversation.id)
        assert [m.id for m in messages] == [first.id, second.id, third.id]
        assert [m.content for m in messages] == ["first", "second", "third"]
        assert messages[1].role == "assistant"

    @pytest.mark.asyncio
    async def test_listing_is_most_recent_first(self, any_store):
        await any_store.connect()
        older = await any_store.create_conversation()
        newer = await any_store.create_conversation()
        await any_store.append_message(older.id, "user", "bump")

        listing = await any_store.list_conversations()
        assert [c.id for c in listing] == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_update_conversation_fields(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()

        updated = await any_store.update_conversation(conversation.id, title="Trip planning")
        assert updated.title == "Trip planning"
        assert (await any_store.get_conversation(conversation.id)).title == "Trip planning"

        with pytest.raises(ValueError):
            await any_store.update_conversation(conversation.id, id="c_other")

    @pytest.mark.asyncio
    async def test_delete_messages_by_id(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()
        a = await any_store.append_message(conversation.id, "user", "a")
        b = await any_store.append_message(conversation.id, "assistant", "b")

        assert await any_store.delete_messages(conversation.id, [a.id, "unknown"]) == 1
        assert [m.id for m in await any_store.get_messages(conversation.id)] == [b.id]

    @pytest.mark.asyncio
    async def test_apply_compaction(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()
        messages = [
            await any_store.append_message(conversation.id, "user", str(i)) for i in range(5)
        ]
        at = datetime(2025, 1, 1, tzinfo=timezone.utc)

        await any_store.apply_compaction(
            conversation.id, "- summary", [m.id for m in messages[:3]], at
        )

        loaded = await any_store.get_conversation(conversation.id)
        assert loaded.summary == "- summary"
        assert loaded.summary_updated_at == at
        assert [m.content for m in await any_store.get_messages(conversation.id)] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_delete_conversation(self, any_store):
        await any_store.connect()
        conversation = await any_store.create_conversation()
        await any_store.append_message(conversation.id, "user", "bye")

        assert await any_store.delete_conversation(conversation.id) is True
        assert await any_store.get_conversation(conversation.id) is None
        assert await any_store.list_conversations() == []


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "data" / "conversations.json"
        store = JsonFileStore(path)
        await store.connect()
        conversation = await store.create_conversation()
        await store.append_message(conversation.id, "user", "olá")

        reopened = JsonFileStore(path)
        await reopened.connect()
        [message] = await reopened.get_messages(conversation.id)
        assert message.content == "olá"

        document = json.loads(path.read_text(encoding="utf-8"))
        assert conversation.id in document["conversations"]

    @pytest.mark.asyncio
    async def test_corrupt_file_is_a_persistence_error(self, tmp_path):
        path = tmp_path / "conversations.json"
        path.write_text("{not json")
        store = JsonFileStore(path)
        with pytest.raises(PersistenceError):
            await store.get_conversation("c_any")

    @pytest.mark.asyncio
    async def test_messages_without_ids_get_stable_ids(self, tmp_path):
        path = tmp_path / "conversations.json"
        legacy = {
            "conversations": {
                "c_old": {
                    "title": "Trip",
                    "messages": [
                        {"role": "user", "content": "hi", "ts": 1700000000000},
                        {"role": "assistant", "content": "hello", "ts": 1700000001000},
                        {"role": "user", "content": "bye", "ts": 1700000002000},
                    ],
                }
            }
        }
        path.write_text(json.dumps(legacy), encoding="utf-8")
        store = JsonFileStore(path)
        await store.connect()

        first = await store.get_messages("c_old")
        second = await store.get_messages("c_old")
        assert [m.id for m in first] == [m.id for m in second]
        assert first[0].created_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

        await store.apply_compaction("c_old", "- greeted", [first[0].id], datetime.now(timezone.utc))
        assert [m.content for m in await store.get_messages("c_old")] == ["hello", "bye"]
        assert (await store.get_conversation("c_old")).summary == "- greeted"

    @pytest.mark.asyncio
    async def test_message_without_id_after_connect_is_rejected(self, tmp_path):
        path = tmp_path / "conversations.json"
        store = JsonFileStore(path)
        await store.connect()
        conversation = await store.create_conversation()

        document = json.loads(path.read_text(encoding="utf-8"))
        document["conversations"][conversation.id]["messages"].append(
            {"role": "user", "content": "hand edited"}
        )
        path.write_text(json.dumps(document), encoding="utf-8")

        with pytest.raises(PersistenceError):
            await store.get_messages(conversation.id)


class CountingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.reads = 0

    async def get_conversation(self, conversation_id):
        self.reads += 1
        return await super().get_conversation(conversation_id)

    async def get_messages(self, conversation_id):
        self.reads += 1
        return await super().get_messages(conversation_id)


class PausedReadStore(MemoryStore):
    """Holds one read after its snapshot is taken until released."""

    def __init__(self):
        super().__init__()
        self.pause_next = False
        self.snapshot_taken = asyncio.Event()
        self.release = asyncio.Event()

    async def _hold(self, result):
        if self.pause_next:
            self.pause_next = False
            self.snapshot_taken.set()
            await self.release.wait()
        return result

    async def get_conversation(self, conversation_id):
        return await self._hold(await super().get_conversation(conversation_id))

    async def get_messages(self, conversation_id):
        return await self._hold(await super().get_messages(conversation_id))

    async def list_conversations(self, limit=100):
        return await self._hold(await super().list_conversations(limit))


class TestCachedStore:
    """Test the read-through cache."""

    @pytest.mark.asyncio
    async def test_reads_are_served_from_cache(self):
        backend = CountingStore()
        store = CachedStore(backend)
        conversation = await store.create_conversation()

        await store.get_conversation(conversation.id)
        await store.get_conversation(conversation.id)
        await store.get_messages(conversation.id)
        await store.get_messages(conversation.id)
        assert backend.reads == 2

    @pytest.mark.asyncio
    async def test_writes_invalidate(self):
        backend = CountingStore()
        store = CachedStore(backend)
        conversation = await store.create_conversation()
        assert await store.get_messages(conversation.id) == []

        await store.append_message(conversation.id, "user", "hello")
        assert [m.content for m in await store.get_messages(conversation.id)] == ["hello"]

        await store.update_conversation(conversation.id, summary="- s")
        assert (await store.get_conversation(conversation.id)).summary == "- s"

    @pytest.mark.asyncio
    async def test_failed_write_does_not_leave_stale_cache(self):
        class FailingStore(MemoryStore):
            async def apply_compaction(self, *args, **kwargs):
                raise PersistenceError("write failed")

        store = CachedStore(FailingStore())
        conversation = await store.create_conversation()
        await store.append_message(conversation.id, "user", "hello")
        await store.get_messages(conversation.id)

        with pytest.raises(PersistenceError):
            await store.apply_compaction(conversation.id, "- s", [], datetime.now(timezone.utc))
        assert (await store.get_conversation(conversation.id)).summary == ""

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self):
        store = CachedStore(MemoryStore())
        conversation = await store.create_conversation()
        loaded = await store.get_conversation(conversation.id)
        loaded.title = "mutated"
        assert (await store.get_conversation(conversation.id)).title != "mutated"

    @pytest.mark.asyncio
    async def test_read_overlapping_append_is_not_cached(self):
        backend = PausedReadStore()
        store = CachedStore(backend)
        conversation = await store.create_conversation()

        backend.pause_next = True
        read = asyncio.create_task(store.get_messages(conversation.id))
        await backend.snapshot_taken.wait()
        await store.append_message(conversation.id, "user", "hello")
        backend.release.set()

        assert await read == []
        assert len(await backend.get_messages(conversation.id)) == 1
        assert [m.content for m in await store.get_messages(conversation.id)] == ["hello"]

    @pytest.mark.asyncio
    async def test_read_overlapping_compaction_is_not_cached(self):
        backend = PausedReadStore()
        store = CachedStore(backend)
        conversation = await store.create_conversation()
        old = await store.append_message(conversation.id, "user", "old")
        await store.append_message(conversation.id, "assistant", "recent")

        backend.pause_next = True
        read = asyncio.create_task(store.get_conversation(conversation.id))
        await backend.snapshot_taken.wait()
        await store.apply_compaction(
            conversation.id, "- old", [old.id], datetime.now(timezone.utc)
        )
        backend.release.set()

        assert (await read).summary == ""
        assert (await store.get_conversation(conversation.id)).summary == "- old"
        assert [m.content for m in await store.get_messages(conversation.id)] == ["recent"]

    @pytest.mark.asyncio
    async def test_listing_overlapping_create_is_not_cached(self):
        backend = PausedReadStore()
        store = CachedStore(backend)
        await store.create_conversation()

        backend.pause_next = True
        read = asyncio.create_task(store.list_conversations())
        await backend.snapshot_taken.wait()
        await store.create_conversation()
        backend.release.set()

        assert len(await read) == 1
        assert len(await store.list_conversations()) == 2


class TestCreateStore:
    def test_backend_selection(self, tmp_path):
        memory = create_store(Settings(_env_file=None, storage_backend="memory"))
        assert isinstance(memory, MemoryStore)

        cached_json = create_store(
            Settings(_env_file=None, storage_backend="json", data_dir=tmp_path)
        )
        assert isinstance(cached_json, CachedStore)
        assert isinstance(cached_json.backend, JsonFileStore)
        assert cached_json.backend.path == tmp_path / "conversations.json"

        postgres = create_store(
            Settings(_env_file=None, storage_backend="postgres", storage_cache=False)
        )
        assert isinstance(postgres, PostgresStore)
