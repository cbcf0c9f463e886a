"""Shared fixtures: settings without side effects and a fake Messages API."""

import asyncio
import json

import httpx
import pytest

from chatrelay.config import Settings
from chatrelay.db import MemoryStore
from chatrelay.services.anthropic import AnthropicClient

ANTHROPIC_URL = "https://anthropic.test/v1/messages"


def sse_body(*texts: str, stop: bool = True) -> bytes:
    """Encode a Messages API stream with one text delta per item."""
    events = [{"type": "message_start", "message": {"id": "msg_1", "content": []}}]
    events.append({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
    for text in texts:
        events.append(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}
        )
    events.append({"type": "content_block_stop", "index": 0})
    if stop:
        events.append({"type": "message_stop"})
    lines = []
    for event in events:
        lines += [f"event: {event['type']}", f"data: {json.dumps(event)}", ""]
    return ("\n".join(lines) + "\n").encode()


class FakeAnthropic:
    """Answers summary and chat requests the way the Messages API does."""

    def __init__(
        self,
        summary: str = "- The user is planning a trip to Lisbon.\n\nPending:\n- Book hotel",
        reply: tuple[str, ...] = ("Hello", ", how can I help?"),
        summary_status: int = 200,
        stream_status: int = 200,
        stop: bool = True,
        summary_payload: dict | None = None,
        delay: float = 0.0,
    ):
        self.summary = summary
        self.reply = reply
        self.summary_status = summary_status
        self.stream_status = stream_status
        self.stop = stop
        self.summary_payload = summary_payload
        self.delay = delay  # Seconds each response is held back
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)

        if body.get("stream"):
            if self.stream_status != 200:
                return httpx.Response(
                    self.stream_status,
                    json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
                )
            return httpx.Response(
                200,
                content=sse_body(*self.reply, stop=self.stop),
                headers={"content-type": "text/event-stream"},
            )

        if self.summary_status != 200:
            return httpx.Response(
                self.summary_status,
                json={"type": "error", "error": {"type": "api_error", "message": "Internal error"}},
            )
        payload = self.summary_payload or {
            "id": "msg_summary",
            "type": "message",
            "role": "assistant",
            "model": body["model"],
            "content": [{"type": "text", "text": self.summary}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 120, "output_tokens": 40},
        }
        return httpx.Response(200, json=payload)

    async def delayed_handler(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(self.delay)
        return self.handler(request)

    @property
    def summary_requests(self) -> list[dict]:
        return [r for r in self.requests if not r.get("stream")]

    @property
    def chat_requests(self) -> list[dict]:
        return [r for r in self.requests if r.get("stream")]

    def client(self, api_key: str = "test-key") -> AnthropicClient:
        return AnthropicClient(
            api_key=api_key,
            api_url=ANTHROPIC_URL,
            transport=httpx.MockTransport(self.delayed_handler if self.delay else self.handler),
        )


async def seed_messages(store, conversation_id: str, count: int) -> list:
    """Append ``count`` alternating user/assistant messages."""
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(await store.append_message(conversation_id, role, f"{role} message {i}"))
    return messages


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        anthropic_api_key="test-key",
        anthropic_api_url=ANTHROPIC_URL,
        storage_backend="memory",
        data_dir=tmp_path / "data",
        static_dir=tmp_path / "static",
        chat_password="",
        custom_instructions="",
    )


@pytest.fixture
def fake_anthropic() -> FakeAnthropic:
    return FakeAnthropic()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
