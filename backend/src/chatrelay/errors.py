"""Error kinds surfaced to API callers.

Every error renders as ``{"error": message, "details": detail}``; ``details``
is omitted when there is nothing more to say.
"""

from typing import Any


class ChatRelayError(Exception):
    """Base class for errors with a user-visible payload."""

    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ConfigurationMissingError(ChatRelayError):
    """No provider credential is configured."""

    status_code = 500


class ChatValidationError(ChatRelayError):
    """The request was rejected before any write."""

    status_code = 400


class ConversationNotFoundError(ChatRelayError):
    status_code = 404

    def __init__(self, conversation_id: str):
        super().__init__("Conversation not found")
        self.conversation_id = conversation_id


class UnauthorizedError(ChatRelayError):
    status_code = 401


class UpstreamError(ChatRelayError):
    """The model provider failed or answered with a non-success status."""

    status_code = 502

    def __init__(self, message: str, details: Any = None, status: int | None = None):
        super().__init__(message, details)
        self.status = status


class UnparseableResponseError(UpstreamError):
    """The provider answered, but the response holds no usable text."""


class PersistenceError(ChatRelayError):
    """A store read or write failed."""

    status_code = 500
