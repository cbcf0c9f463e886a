"""Outbound context assembly for the primary chat request.

The summary travels in the system prompt only; the message history carries
the most recent stored turns plus the rich form of the current user turn.
"""

from typing import Any

from models import Attachment, Message

from chatrelay.config import Settings

SUMMARY_HEADER = "Summarized context for this conversation:\n"
ATTACHMENT_PLACEHOLDER = "[Attachment sent]"


def build_system_prompt(summary: str | None, custom_instructions: str = "") -> str | None:
    """Summary block followed by custom instructions; None when both are empty."""
    system = ""
    if summary:
        system = f"{SUMMARY_HEADER}{summary}\n\n"
    system = (system + (custom_instructions or "")).strip()
    return system or None


def build_history(messages: list[Message], max_turns: int) -> list[dict[str, Any]]:
    """Map the last ``max_turns`` stored messages to provider messages."""
    recent = messages[-max_turns:] if max_turns > 0 else []
    # The provider expects the conversation to open with a user turn
    while recent and recent[0].role != "user":
        recent = recent[1:]
    return [{"role": m.role, "content": m.content} for m in recent]


def attachment_block(attachment: Attachment) -> dict[str, Any] | None:
    """Provider content block for one attachment, or None to skip it."""
    if attachment.kind == "image":
        if not attachment.data or not attachment.media_type:
            return None
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": attachment.media_type,
                "data": attachment.data,
            },
        }

    if attachment.kind == "pdf":
        if not attachment.data:
            return None
        return {
            "type": "document",
            "source": {
                "type": "base64",
                "media_type": "application/pdf",
                "data": attachment.data,
            },
        }

    if attachment.kind == "text":
        if not attachment.text:
            return None
        name = attachment.name or "file"
        return {
            "type": "text",
            "text": f"\n\n---\nFILE: {name}\nContent (text):\n{attachment.text}\n---\n",
        }

    return None


def build_user_content(
    text: str, attachments: list[Attachment] | None = None
) -> str | list[dict[str, Any]]:
    """Content of the current user turn.

    Plain text without attachments goes out as a bare string; anything else
    as an ordered block list (typed text first, then attachments).
    """
    blocks: list[dict[str, Any]] = []
    if text:
        blocks.append({"type": "text", "text": text})
    attachment_blocks = [
        block for block in (attachment_block(a) for a in attachments or []) if block
    ]
    if not attachment_blocks:
        return text
    return blocks + attachment_blocks


def stored_user_text(text: str) -> str:
    """What is persisted for a user turn; attachment payloads never are."""
    return text or ATTACHMENT_PLACEHOLDER


def normalize_model(requested: str | None, config: Settings) -> str:
    """Map a free-text model id onto the capable or the fast tier.

    Anything that does not name the fast tier, including stale or garbled
    ids, falls back to the capable model.
    """
    name = (requested or "").strip().lower()
    if name == "fast" or "haiku" in name:
        return config.fast_model
    return config.capable_model
