"""Chat request models shared by the API and the chat handler."""

from pydantic import AliasChoices, BaseModel, Field


class Attachment(BaseModel):
    """A file sent alongside a user turn.

    Payloads are forwarded to the model but never persisted.
    """

    kind: str = Field("", description="Attachment kind: image, pdf or text")
    name: str | None = Field(None, description="Original file name")
    media_type: str | None = Field(None, description="MIME type, required for images")
    data: str | None = Field(None, description="Base64 payload for image and pdf")
    text: str | None = Field(None, description="Inline content for text files")


class ChatStreamRequest(BaseModel):
    """Request model for a streamed chat turn."""

    conversation_id: str | None = Field(
        None,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
        description="Existing conversation ID",
    )
    message: str | None = Field(None, description="User message text")
    model: str | None = Field(None, description="Free-text model identifier")
    attachments: list[Attachment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return (self.message or "").strip()
