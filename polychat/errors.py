"""Error taxonomy shared by the adapters, the orchestrator and the API."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from polychat.conversations.store import Message


class ErrorKind(str, enum.Enum):
    INVALID_INPUT = "InvalidInput"
    AUTH_MISSING = "AuthMissing"
    NETWORK_FAILURE = "NetworkFailure"
    HTTP_ERROR = "HttpError"
    MALFORMED_RESPONSE = "MalformedResponse"
    NOT_FOUND = "NotFound"
    CONFIGURATION_ERROR = "ConfigurationError"


class ChatError(Exception):
    """Base error.  ``kind`` and ``status_code`` drive the HTTP response."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind.value, "message": self.message}


class InvalidInputError(ChatError):
    """Caller error, raised before anything is persisted."""

    kind = ErrorKind.INVALID_INPUT
    status_code = 400


class NotFoundError(ChatError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConfigurationError(ChatError):
    """Server misconfiguration detected at startup."""

    kind = ErrorKind.CONFIGURATION_ERROR
    status_code = 500


class ProviderError(ChatError):
    """Failure talking to an LLM provider.

    Args:
        kind: One of ``AUTH_MISSING``, ``NETWORK_FAILURE``, ``HTTP_ERROR``
            or ``MALFORMED_RESPONSE``.
        provider_message: Human-readable detail, echoed to the client.
        status: Provider HTTP status for ``HTTP_ERROR``.
        provider: Name of the failing provider (``gemini``, ``claude``, ...).
    """

    def __init__(
        self,
        kind: ErrorKind,
        provider_message: str,
        status: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(provider_message)
        self.kind = kind
        self.provider_message = provider_message
        self.status = status
        self.provider = provider

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.kind is ErrorKind.HTTP_ERROR and self.status and 400 <= self.status < 600:
            return self.status
        if self.kind is ErrorKind.HTTP_ERROR:
            return 502
        return 500

    def __str__(self) -> str:
        prefix = f"{self.provider}: " if self.provider else ""
        if self.status is not None:
            return f"{prefix}{self.kind.value}({self.status}): {self.provider_message}"
        return f"{prefix}{self.kind.value}: {self.provider_message}"


class ReplyFailedError(ChatError):
    """The user's message was saved but no assistant reply was produced.

    Clients use this to offer "retry generation" instead of "resubmit".
    Provider failures keep their status; any other cause maps to 500.
    """

    def __init__(
        self,
        cause: ChatError,
        conversation_id: str,
        user_message: Message,
    ) -> None:
        super().__init__(cause.message)
        self.cause = cause
        self.kind = cause.kind
        self.conversation_id = conversation_id
        self.user_message = user_message

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if isinstance(self.cause, ProviderError):
            return self.cause.status_code
        return 500

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["stage"] = "reply"
        data["conversationId"] = self.conversation_id
        data["userMessage"] = self.user_message.to_dict()
        if isinstance(self.cause, ProviderError):
            if self.cause.provider:
                data["provider"] = self.cause.provider
            if self.cause.status is not None:
                data["providerStatus"] = self.cause.status
        return data
