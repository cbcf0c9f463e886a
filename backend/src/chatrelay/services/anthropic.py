"""HTTP client for the Anthropic Messages API.

Two call shapes are used: a full completion (summaries) and an incremental
text stream (chat replies). Responses are decoded into typed results; a
response without usable text is an ``UnparseableResponseError``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

import httpx

from chatrelay.config import Settings, settings
from chatrelay.errors import (
    ConfigurationMissingError,
    UnparseableResponseError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """Decoded non-streaming response."""

    text: str
    model: str | None = None
    stop_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamEvent:
    """One decoded event of a streamed response."""

    type: Literal["text", "stop"]
    text: str = ""


def extract_text(payload: Any) -> str:
    """Pick the reply text out of a Messages API response body.

    The first ``text`` block wins; otherwise the first block is used as-is.
    Raises UnparseableResponseError when neither yields non-empty text.
    """
    content = payload.get("content") if isinstance(payload, dict) else None
    if not isinstance(content, list) or not content:
        raise UnparseableResponseError("Response has no content blocks", payload)

    blocks = [b for b in content if isinstance(b, dict)]
    chosen = next((b for b in blocks if b.get("type") == "text"), None)
    if chosen is None and blocks:
        chosen = blocks[0]

    text = chosen.get("text") if chosen else None
    if not isinstance(text, str) or not text.strip():
        raise UnparseableResponseError("Response has no text", payload)
    return text.strip()


def parse_stream_line(line: str) -> StreamEvent | None:
    """Decode one SSE line from the provider. Returns None for lines to skip."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None

    if event.get("type") == "error":
        error = event.get("error") or {}
        raise UpstreamError(
            error.get("message", "Provider stream error") if isinstance(error, dict) else "Provider stream error",
            event,
        )
    if event.get("type") == "message_stop":
        return StreamEvent(type="stop")

    delta = event.get("delta")
    text = delta.get("text") if isinstance(delta, dict) else None
    if isinstance(text, str) and text:
        return StreamEvent(type="text", text=text)
    return None


def _error_details(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body.decode("utf-8", errors="replace")[:500]


class AnthropicClient:
    """Thin wrapper over ``POST /v1/messages``."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        version: str = "2023-06-01",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.version = version
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, config: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
    ) -> "AnthropicClient":
        config = config or settings
        return cls(
            api_key=config.anthropic_api_key,
            api_url=config.anthropic_api_url,
            version=config.anthropic_version,
            timeout=config.anthropic_timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationMissingError("ANTHROPIC_API_KEY is not set")
        return {
            "content-type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.version,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def build_body(
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        system: str | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            body["system"] = system
        if stream:
            body["stream"] = True
        return body

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        system: str | None = None,
    ) -> CompletionResult:
        """Send one request and decode the full response."""
        headers = self._headers()
        body = self.build_body(model, messages, max_tokens, system)

        async with self._client() as client:
            try:
                response = await client.post(self.api_url, headers=headers, json=body)
            except httpx.RequestError as e:
                logger.error(f"Anthropic request error: {e}")
                raise UpstreamError("Provider request failed", str(e)) from e

        if response.status_code != 200:
            raise UpstreamError(
                "Provider returned an error",
                _error_details(response.content),
                status=response.status_code,
            )

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise UnparseableResponseError("Response is not JSON", response.text[:500]) from e

        return CompletionResult(
            text=extract_text(payload),
            model=payload.get("model"),
            stop_reason=payload.get("stop_reason"),
            usage=payload.get("usage") or {},
        )

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        system: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream text deltas, ending with a ``stop`` event on completion.

        Closing the generator closes the HTTP response, which aborts the
        upstream request.
        """
        headers = self._headers()
        body = self.build_body(model, messages, max_tokens, system, stream=True)

        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", self.api_url, headers=headers, json=body
                ) as response:
                    if response.status_code != 200:
                        error_body = await response.aread()
                        raise UpstreamError(
                            "Provider returned an error",
                            _error_details(error_body),
                            status=response.status_code,
                        )

                    async for line in response.aiter_lines():
                        event = parse_stream_line(line)
                        if event is not None:
                            yield event
            except httpx.RequestError as e:
                logger.error(f"Anthropic stream error: {e}")
                raise UpstreamError("Provider request failed", str(e)) from e
