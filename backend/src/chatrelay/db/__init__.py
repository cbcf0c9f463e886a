"""Conversation storage backends and the process-wide store."""

from chatrelay.config import Settings, settings
from chatrelay.db.base import ConversationStore
from chatrelay.db.cache import CachedStore
from chatrelay.db.json_file import JsonFileStore
from chatrelay.db.memory import MemoryStore
from chatrelay.db.postgres import PostgresStore


def create_store(config: Settings) -> ConversationStore:
    """Build the store selected by ``storage_backend``."""
    if config.storage_backend == "memory":
        return MemoryStore()

    store: ConversationStore
    if config.storage_backend == "postgres":
        store = PostgresStore(config.database_url)
    else:
        store = JsonFileStore(config.data_dir / "conversations.json")

    return CachedStore(store) if config.storage_cache else store


# Global store instance
db = create_store(settings)

__all__ = [
    "ConversationStore",
    "CachedStore",
    "JsonFileStore",
    "MemoryStore",
    "PostgresStore",
    "create_store",
    "db",
]
