"""API-specific response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from models import ConversationSummary, Message


class ConversationResponse(BaseModel):
    """A conversation with its stored messages."""

    id: str
    title: str
    summary: str
    summary_updated_at: datetime | None
    created_at: datetime
    updated_at: datetime
    messages: list[Message] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    """Response model for list of conversations."""

    conversations: list[ConversationSummary]


class ConversationCreatedResponse(BaseModel):
    id: str


class OkResponse(BaseModel):
    ok: bool = True
