"""Conversation and message models."""

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New conversation"
TITLE_MAX_LENGTH = 48


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_conversation_id() -> str:
    """Short opaque id, e.g. ``c_3f9a1b2cmf0k2x``."""
    return "c_" + secrets.token_hex(4) + format(int(time.time() * 1000), "x")


def new_message_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=new_message_id, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    role: Literal["user", "assistant"] = Field(..., description="Message role")
    content: str = Field(..., description="Message content (text only)")
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")


class Conversation(BaseModel):
    """A conversation thread with its rolling summary."""

    id: str = Field(default_factory=new_conversation_id, description="Unique conversation ID")
    title: str = Field(DEFAULT_TITLE, description="Conversation title")
    summary: str = Field("", description="Compacted summary of deleted older messages")
    summary_updated_at: datetime | None = Field(None, description="Last successful compaction")
    created_at: datetime = Field(default_factory=_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_now, description="Last update timestamp")

    @property
    def has_placeholder_title(self) -> bool:
        return not self.title or self.title == DEFAULT_TITLE


class ConversationSummary(BaseModel):
    """Listing entry for the conversation sidebar."""

    id: str
    title: str
    updated_at: datetime


def title_from_message(text: str) -> str:
    """Derive a conversation title from the first user message."""
    return (text.strip() or DEFAULT_TITLE)[:TITLE_MAX_LENGTH]
