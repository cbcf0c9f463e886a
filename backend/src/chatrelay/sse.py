"""Server-Sent Events support for streamed chat replies."""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from fastapi.responses import StreamingResponse


class EventType(str, Enum):
    """SSE event types sent to the browser."""

    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    @property
    def terminal(self) -> bool:
        return self.event in (EventType.DONE, EventType.ERROR)

    def encode(self) -> str:
        """Encode as SSE format."""
        event = self.event.value if isinstance(self.event, EventType) else self.event
        lines = [
            f"id: {self.id}",
            f"event: {event}",
            f"data: {json.dumps(self.data, ensure_ascii=False)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


def token_event(text: str) -> SSEEvent:
    return SSEEvent(event=EventType.TOKEN, data={"t": text})


def done_event() -> SSEEvent:
    return SSEEvent(event=EventType.DONE, data={"ok": True})


def error_event(message: str, details: Any = None) -> SSEEvent:
    data: dict[str, Any] = {"error": message}
    if details is not None:
        data["details"] = details
    return SSEEvent(event=EventType.ERROR, data=data)


async def encode_events(events: AsyncIterator[SSEEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.encode()


def create_sse_response(generator: AsyncIterator[str]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
