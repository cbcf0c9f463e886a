"""Shared Pydantic models for chatrelay."""

from models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationSummary,
    Message,
    title_from_message,
)
from models.chat import Attachment, ChatStreamRequest

__all__ = [
    "DEFAULT_TITLE",
    "Conversation",
    "ConversationSummary",
    "Message",
    "title_from_message",
    "Attachment",
    "ChatStreamRequest",
]
