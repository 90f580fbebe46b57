"""Chat turn orchestration: persistence, adapter selection and fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from polychat.conversations.store import (
    MAX_ATTACHMENT_BYTES,
    Attachment,
    ConversationStore,
    Message,
)
from polychat.errors import (
    ChatError,
    ConfigurationError,
    InvalidInputError,
    NotFoundError,
    ProviderError,
    ReplyFailedError,
)
from polychat.llm.backend import AdapterRegistry, CompletionOptions, CompletionResult
from polychat.text.markdown import sanitize
from polychat.text.tokens import estimate_tokens

logger = logging.getLogger(__name__)

_TITLE_LENGTH = 50
_DEFAULT_TITLE = "New Conversation"


@dataclass
class ChatTurnResult:
    conversation_id: str
    user_message: Message
    assistant_message: Message

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "userMessage": self.user_message.to_dict(),
            "assistantMessage": self.assistant_message.to_dict(),
        }


def make_title(text: str) -> str:
    """First 50 characters of *text*, with ``...`` when it was longer.

    The raw text is sliced as-is; only a blank text (an attachment-only
    message) falls back to ``"New Conversation"``.
    """
    if not text.strip():
        return _DEFAULT_TITLE
    if len(text) > _TITLE_LENGTH:
        return text[:_TITLE_LENGTH] + "..."
    return text


class ChatOrchestrator:
    """Runs one chat turn end to end.

    Args:
        store: Conversation persistence.
        registry: Provider adapters keyed by model id.
        options: Generation defaults passed to every adapter call.
        fallback_enabled: Retry once on the primary provider when a
            non-primary provider fails.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: AdapterRegistry,
        options: CompletionOptions | None = None,
        fallback_enabled: bool = True,
    ) -> None:
        self._store = store
        self._registry = registry
        self._options = options or CompletionOptions()
        self._fallback_enabled = fallback_enabled

        try:
            self._options.validate()
        except InvalidInputError as e:
            raise ConfigurationError(f"Invalid generation options: {e.message}") from e

    @staticmethod
    def _validate(user_text: str, attachments: Sequence[Attachment]) -> None:
        if not (user_text or "").strip() and not attachments:
            raise InvalidInputError("Message is required")
        for att in attachments:
            payload_size = att.payload_size
            if att.size > MAX_ATTACHMENT_BYTES or payload_size > MAX_ATTACHMENT_BYTES:
                raise InvalidInputError(
                    f"Attachment '{att.filename}' exceeds the 10 MB limit"
                )
            if att.size != payload_size:
                raise InvalidInputError(
                    f"Attachment '{att.filename}' declares {att.size} bytes "
                    f"but carries {payload_size}"
                )

    async def send_message(
        self,
        conversation_id: str | None,
        user_text: str,
        attachments: Sequence[Attachment] | None = None,
        model_id: str | None = None,
        user_id: str | None = None,
    ) -> ChatTurnResult:
        """Persist the user's message, generate a reply and persist it.

        Raises:
            InvalidInputError: Nothing was persisted.
            NotFoundError: *conversation_id* does not exist.
            ReplyFailedError: The user message is saved but the provider
                (and the fallback, if attempted) failed.
        """
        attachments = list(attachments or [])
        self._validate(user_text, attachments)

        if conversation_id:
            if await self._store.get_conversation(conversation_id) is None:
                raise NotFoundError(f"Conversation '{conversation_id}' not found")
        else:
            conv = await self._store.create_conversation(
                title=make_title(user_text), user_id=user_id,
            )
            conversation_id = conv.id

        user_message = await self._store.create_message(
            conversation_id,
            role="user",
            content=user_text,
            attachments=attachments or None,
            metadata={"tokens": estimate_tokens(user_text)},
        )

        history = await self._store.get_messages(conversation_id)

        try:
            result, provider = await self._complete(history, model_id)
        except ChatError as e:
            logger.error("Chat turn failed for conversation %s: %s", conversation_id, e)
            raise ReplyFailedError(e, conversation_id, user_message) from e

        content = sanitize(result.content)
        assistant_message = await self._store.create_message(
            conversation_id,
            role="assistant",
            content=content,
            attachments=None,
            metadata={
                "tokens": result.usage.completion_tokens,
                "model": result.model,
                "provider": provider,
                "prompt_tokens": result.usage.prompt_tokens,
                "completion_tokens": result.usage.completion_tokens,
                "total_tokens": result.usage.total_tokens,
            },
        )

        await self._store.touch_conversation(conversation_id)

        return ChatTurnResult(
            conversation_id=conversation_id,
            user_message=user_message,
            assistant_message=assistant_message,
        )

    async def _complete(
        self,
        history: list[Message],
        model_id: str | None,
    ) -> tuple[CompletionResult, str]:
        """Call the adapter for *model_id*, falling back to the primary once."""
        adapter = self._registry.resolve(model_id)
        try:
            return await adapter.complete(history, self._options), adapter.provider
        except ProviderError as e:
            if not self._fallback_enabled or self._registry.is_primary(adapter):
                raise
            primary = self._registry.primary
            logger.warning(
                "%s failed (%s), falling back to primary %s.",
                adapter.provider, e, primary.provider,
            )
            return await primary.complete(history, self._options), primary.provider
