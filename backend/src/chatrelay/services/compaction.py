"""Conversation compaction service.

Summarizes older messages into the conversation's rolling summary and drops
them from the store, keeping the most recent ones verbatim. Compaction is a
best-effort step before the chat request: any failure leaves the
conversation untouched and the turn proceeds uncompacted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from models import Conversation, Message

from chatrelay.config import Settings, settings
from chatrelay.db import ConversationStore
from chatrelay.errors import ChatRelayError
from chatrelay.services.anthropic import AnthropicClient

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = (
    "Summarize the conversation below objectively, writing in the same language "
    "the conversation is held in.\n"
    "- Preserve facts, decisions, preferences, names and numbers.\n"
    "- Use short bullets.\n"
    "- If there are pending or open tasks, list them under a separate 'Pending' section.\n"
)


@dataclass(frozen=True)
class CompactionPolicy:
    """Thresholds deciding when a conversation is compacted."""

    min_messages: int = 22  # Total stored messages before compaction is considered
    keep_last: int = 12  # Most recent messages that are never summarized
    min_batch: int = 12  # Smallest number of old messages worth a summary call
    cooldown_seconds: float = 60.0  # Minimum gap between two summaries
    carry_summary: bool = True

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "CompactionPolicy":
        config = config or settings
        return cls(
            min_messages=config.compaction_min_messages,
            keep_last=config.compaction_keep_last,
            min_batch=config.compaction_min_batch,
            cooldown_seconds=config.compaction_cooldown_seconds,
            carry_summary=config.compaction_carry_summary,
        )


def split_messages(
    messages: list[Message], keep_last: int
) -> tuple[list[Message], list[Message]]:
    """Split into (old, recent) where recent holds the last ``keep_last``."""
    cut = max(0, len(messages) - max(0, keep_last))
    return messages[:cut], messages[cut:]


def is_compaction_due(
    conversation: Conversation,
    messages: list[Message],
    policy: CompactionPolicy,
    now: datetime | None = None,
) -> bool:
    """Check threshold, cooldown and minimum batch size."""
    if len(messages) < policy.min_messages:
        return False

    if conversation.summary_updated_at is not None:
        now = now or datetime.now(timezone.utc)
        elapsed = (now - conversation.summary_updated_at).total_seconds()
        if elapsed < policy.cooldown_seconds:
            return False

    old, _ = split_messages(messages, policy.keep_last)
    return len(old) >= policy.min_batch


def format_transcript(messages: list[Message]) -> str:
    """Render messages as ``ROLE: content`` lines, oldest first."""
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def build_summary_prompt(messages: list[Message], previous_summary: str = "") -> str:
    """Prompt for the summarization model."""
    prompt = SUMMARY_INSTRUCTIONS
    if previous_summary:
        prompt += (
            "\nThe conversation continues from this earlier summary; fold what is "
            "still relevant into the new summary.\n\n"
            f"EARLIER SUMMARY:\n{previous_summary}\n"
        )
    return f"{prompt}\nCONVERSATION:\n{format_transcript(messages)}"


async def summarize_messages(
    client: AnthropicClient,
    messages: list[Message],
    previous_summary: str = "",
    model: str | None = None,
    max_tokens: int | None = None,
) -> str:
    """Use the fast model to summarize a list of messages.

    Raises UpstreamError (or UnparseableResponseError) when no summary comes back.
    """
    prompt = build_summary_prompt(messages, previous_summary)
    result = await client.complete(
        model=model or settings.fast_model,
        messages=[{"role": "user", "content": prompt}],
        max_tokens=max_tokens or settings.summary_max_tokens,
    )
    return result.text


class ContextCompactor:
    """Decides whether a conversation needs compaction and performs it."""

    def __init__(
        self,
        store: ConversationStore,
        client: AnthropicClient,
        policy: CompactionPolicy | None = None,
        config: Settings | None = None,
    ):
        self.store = store
        self.client = client
        self.policy = policy or CompactionPolicy.from_settings(config)
        self.config = config or settings

    async def compact_conversation(
        self, conversation_id: str, now: datetime | None = None
    ) -> bool:
        """Compact the conversation if due. Returns True when it was compacted.

        Never raises for provider or storage failures; those leave the
        conversation exactly as it was.
        """
        try:
            conversation = await self.store.get_conversation(conversation_id)
            if not conversation:
                logger.warning(f"Conversation {conversation_id} not found for compaction")
                return False

            messages = await self.store.get_messages(conversation_id)
            if not is_compaction_due(conversation, messages, self.policy, now):
                return False

            old, recent = split_messages(messages, self.policy.keep_last)
            logger.info(
                f"Starting compaction for conversation {conversation_id} "
                f"(messages={len(messages)}, summarizing={len(old)}, keeping={len(recent)})"
            )

            summary = await summarize_messages(
                self.client,
                old,
                previous_summary=conversation.summary if self.policy.carry_summary else "",
                model=self.config.fast_model,
                max_tokens=self.config.summary_max_tokens,
            )

            await self.store.apply_compaction(
                conversation_id,
                summary=summary,
                message_ids=[m.id for m in old],
                at=now or datetime.now(timezone.utc),
            )

            logger.info(
                f"Compaction complete for conversation {conversation_id}: "
                f"summarized {len(old)} messages"
            )
            return True

        except ChatRelayError as e:
            logger.error(
                f"Compaction failed for conversation {conversation_id}: {e.message} {e.details or ''}".rstrip()
            )
            return False
        except Exception as e:
            logger.exception(f"Compaction failed for conversation {conversation_id}: {e}")
            return False
