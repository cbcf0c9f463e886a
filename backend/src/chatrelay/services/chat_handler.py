"""Chat turn handling: persist, compact, relay the streamed reply, persist again."""

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, cast

from models import ChatStreamRequest, title_from_message

from chatrelay.config import Settings, settings
from chatrelay.db import ConversationStore
from chatrelay.errors import (
    ChatRelayError,
    ChatValidationError,
    ConfigurationMissingError,
    ConversationNotFoundError,
)
from chatrelay.locks import KeyedLocks, conversation_locks
from chatrelay.services.anthropic import AnthropicClient
from chatrelay.services.compaction import ContextCompactor
from chatrelay.services.context import (
    attachment_block,
    build_history,
    build_system_prompt,
    build_user_content,
    normalize_model,
    stored_user_text,
)
from chatrelay.sse import SSEEvent, done_event, error_event, token_event

logger = logging.getLogger(__name__)


@dataclass
class PreparedTurn:
    """Everything needed to send the primary chat request."""

    conversation_id: str
    model: str
    messages: list[dict[str, Any]]
    system: str | None = None
    max_tokens: int = 900
    compacted: bool = False


class ChatHandler:
    """Runs chat turns against one store and one provider client."""

    def __init__(
        self,
        store: ConversationStore,
        client: AnthropicClient,
        config: Settings | None = None,
        locks: KeyedLocks | None = None,
        compactor: ContextCompactor | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or settings
        self.locks = locks or conversation_locks
        self.compactor = compactor or ContextCompactor(store, client, config=self.config)

    def validate(self, request: ChatStreamRequest) -> None:
        """Reject a turn before anything is written."""
        if not self.client.configured:
            raise ConfigurationMissingError("ANTHROPIC_API_KEY is not set")
        if not request.conversation_id:
            raise ChatValidationError("conversation_id is required")
        has_attachments = any(attachment_block(a) for a in request.attachments)
        if not request.text and not has_attachments:
            raise ChatValidationError("Empty message (no text or attachment)")

    async def prepare_turn(self, request: ChatStreamRequest) -> PreparedTurn:
        """Store the user message, compact if due, and assemble the request.

        Raises ChatRelayError subclasses for configuration, validation, missing
        conversations and storage failures.
        """
        self.validate(request)
        conversation_id = cast(str, request.conversation_id)
        text = request.text

        async with self.locks.hold(conversation_id):
            conversation = await self.store.get_conversation(conversation_id)
            if not conversation:
                raise ConversationNotFoundError(conversation_id)

            user_message = await self.store.append_message(
                conversation_id, "user", stored_user_text(text)
            )
            if text and conversation.has_placeholder_title:
                await self.store.update_conversation(
                    conversation_id, title=title_from_message(text)
                )

            compacted = await self.compactor.compact_conversation(conversation_id)

            conversation = await self.store.get_conversation(conversation_id)
            if not conversation:
                raise ConversationNotFoundError(conversation_id)
            messages = await self.store.get_messages(conversation_id)

        previous = [m for m in messages if m.id != user_message.id]
        history = build_history(previous, self.config.history_max_turns)
        history.append(
            {"role": "user", "content": build_user_content(text, request.attachments)}
        )

        return PreparedTurn(
            conversation_id=conversation_id,
            model=normalize_model(request.model, self.config),
            messages=history,
            system=build_system_prompt(conversation.summary, self.config.custom_instructions),
            max_tokens=self.config.chat_max_tokens,
            compacted=compacted,
        )

    async def stream_reply(
        self,
        turn: PreparedTurn,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[SSEEvent]:
        """Relay the model's reply as token events plus one terminal event.

        The reply is stored only when the provider signalled completion. When
        the client goes away the upstream request is closed and nothing is
        stored or reported.
        """
        chunks: list[str] = []
        completed = False

        try:
            stream = self.client.stream(
                model=turn.model,
                messages=turn.messages,
                max_tokens=turn.max_tokens,
                system=turn.system,
            )
            async with aclosing(stream) as events:
                async for event in events:
                    if is_disconnected and await is_disconnected():
                        logger.info(
                            f"Client disconnected from conversation {turn.conversation_id}, "
                            "dropping reply"
                        )
                        return
                    if event.type == "text":
                        chunks.append(event.text)
                        yield token_event(event.text)
                    elif event.type == "stop":
                        completed = True
                        break
        except ChatRelayError as e:
            logger.error(f"Chat stream failed for {turn.conversation_id}: {e.message} {e.details or ''}")
            yield error_event(e.message, e.details)
            return
        except Exception as e:
            logger.exception(f"Unexpected chat stream failure for {turn.conversation_id}")
            yield error_event("Server error", str(e))
            return

        if not completed:
            logger.warning(f"Stream for {turn.conversation_id} ended without completion")
            yield error_event("Reply ended before completion")
            return

        reply = "".join(chunks)
        try:
            # An empty assistant turn would be rejected in later requests
            if reply.strip():
                async with self.locks.hold(turn.conversation_id):
                    await self.store.append_message(turn.conversation_id, "assistant", reply)
        except ChatRelayError as e:
            logger.error(f"Could not store reply for {turn.conversation_id}: {e.message}")
            yield error_event(e.message, e.details)
            return

        yield done_event()
