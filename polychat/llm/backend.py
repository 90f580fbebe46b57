"""LLM provider adapters for Gemini, Claude and GLM.

Every adapter turns the canonical message history into its provider's wire
format, performs a single HTTP call with ``httpx`` and validates the reply
into a :class:`CompletionResult`.  Failures are raised as
:class:`~polychat.errors.ProviderError`; nothing is swallowed here.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

import httpx

from polychat.errors import ConfigurationError, ErrorKind, InvalidInputError, ProviderError
from polychat.text.tokens import estimate_messages_tokens, estimate_tokens

if TYPE_CHECKING:
    from polychat.config import AppConfig
    from polychat.conversations.store import Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class Usage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> Usage:
        """Build usage with ``total_tokens`` derived from the two parts."""
        prompt_tokens = max(int(prompt_tokens), 0)
        completion_tokens = max(int(completion_tokens), 0)
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CompletionResult:
    """Structured reply from a provider, before sanitizing."""

    content: str
    usage: Usage
    model: str


@dataclass
class CompletionOptions:
    max_tokens: int = 1000
    temperature: float = 0.7

    def validate(self) -> None:
        if self.max_tokens <= 0:
            raise InvalidInputError("max_tokens must be positive")
        if not 0.0 <= self.temperature <= 1.0:
            raise InvalidInputError("temperature must be within [0, 1]")


class ProviderAdapter(abc.ABC):
    """Abstract base class for LLM provider adapters.

    Args:
        api_key: Provider credential.  ``None`` leaves the adapter registered
            but every call fails with ``AuthMissing``.
        model: Model id sent on the wire (e.g. ``claude-3-haiku-20240307``).
        base_url: API root, without trailing slash.
        timeout: Seconds before the call fails with ``NetworkFailure``.
        model_id: Public catalog id reported back in results; defaults to
            *model*.
    """

    provider: str = ""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        model_id: str | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self.model_id = model_id or model

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def complete(
        self,
        history: Sequence[Message],
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Send the ordered conversation *history* and return the reply.

        Raises:
            InvalidInputError: Empty history, bad role or bad options.
            ProviderError: Missing key, network failure, HTTP error or a
                reply without a usable text payload.
        """
        options = options or CompletionOptions()
        options.validate()

        if not self._api_key:
            raise ProviderError(
                ErrorKind.AUTH_MISSING,
                f"{self.provider} API key is not configured",
                provider=self.provider,
            )

        turns = self._canonical_turns(history)
        url, payload, headers = self._build_request(turns, options)

        logger.debug(
            "%s request: model=%s turns=%d max_tokens=%d",
            self.provider, self._model, len(turns), options.max_tokens,
        )
        data = await self._post(url, payload, headers)
        text, usage = self._parse_response(data, turns)
        return CompletionResult(content=text, usage=usage, model=self.model_id)

    @abc.abstractmethod
    def _build_request(
        self,
        turns: list[dict[str, str]],
        options: CompletionOptions,
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        """Return ``(url, json_payload, headers)`` for the provider call."""

    @abc.abstractmethod
    def _parse_response(
        self,
        data: dict[str, Any],
        turns: list[dict[str, str]],
    ) -> tuple[str, Usage]:
        """Extract ``(text, usage)`` or raise ``MalformedResponse``."""

    async def close(self) -> None:
        """No cleanup needed (a client is opened per request)."""
        pass

    # ── Shared helpers ─────────────────────────────────────────────

    @staticmethod
    def _canonical_turns(history: Sequence[Message]) -> list[dict[str, str]]:
        """Map history to ``{role, content}`` dicts.

        Attachments are not forwarded.  A message with blank text is sent as
        a note naming its attachments, since providers reject empty content.
        """
        if not history:
            raise InvalidInputError("Conversation history is empty")
        turns: list[dict[str, str]] = []
        for msg in history:
            if msg.role not in ("user", "assistant"):
                raise InvalidInputError(
                    f"Invalid message role '{msg.role}'; expected 'user' or 'assistant'."
                )
            content = msg.content
            if not content.strip():
                content = _placeholder_text(msg)
            turns.append({"role": msg.role, "content": content})
        return turns

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.TimeoutException:
            raise ProviderError(
                ErrorKind.NETWORK_FAILURE,
                f"{self.provider} did not respond within {self._timeout:g}s",
                provider=self.provider,
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                ErrorKind.HTTP_ERROR,
                _error_detail(e.response),
                status=status,
                provider=self.provider,
            )
        except httpx.TransportError as e:
            raise ProviderError(
                ErrorKind.NETWORK_FAILURE,
                f"Cannot connect to {self.provider}: {e}",
                provider=self.provider,
            )

        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"{self.provider} returned invalid JSON",
                provider=self.provider,
            )
        if not isinstance(data, dict):
            raise self._malformed("response body is not a JSON object")
        return data

    def _malformed(self, detail: str) -> ProviderError:
        logger.warning("Malformed %s response: %s", self.provider, detail)
        return ProviderError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Invalid response from {self.provider}: {detail}",
            provider=self.provider,
        )

    @staticmethod
    def _usage(
        turns: list[dict[str, str]],
        text: str,
        prompt_tokens: Any = None,
        completion_tokens: Any = None,
    ) -> Usage:
        """Prefer provider-reported counts; estimate whatever is missing."""
        if not isinstance(prompt_tokens, int) or isinstance(prompt_tokens, bool):
            prompt_tokens = estimate_messages_tokens(t["content"] for t in turns)
        if not isinstance(completion_tokens, int) or isinstance(completion_tokens, bool):
            completion_tokens = estimate_tokens(text)
        return Usage.of(prompt_tokens, completion_tokens)


def _placeholder_text(msg: Message) -> str:
    """Stand-in text for a message whose content is blank."""
    if msg.attachments:
        names = ", ".join(a.filename for a in msg.attachments)
        return f"[Attached: {names}]"
    return "[empty message]"


def _error_detail(response: httpx.Response) -> str:
    """Best-effort provider error message from a non-2xx response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return f"HTTP {response.status_code}"


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiBackend(ProviderAdapter):
    """Google Gemini via the ``generateContent`` REST endpoint.

    All but the last message form the chat history (``assistant`` becomes
    ``model``); the last message must be the user's active turn.  A
    single-message conversation is sent as a plain generation request.
    """

    provider = "gemini"

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = DEFAULT_TIMEOUT,
        model_id: str | None = None,
    ) -> None:
        super().__init__(api_key, model, base_url, timeout, model_id)

    @staticmethod
    def _split_history(turns: list[dict[str, str]]) -> tuple[list[dict], str]:
        *earlier, latest = turns
        if latest["role"] != "user":
            raise InvalidInputError("The last message sent to Gemini must be a user message")
        history = [
            {
                "role": "model" if t["role"] == "assistant" else "user",
                "parts": [{"text": t["content"]}],
            }
            for t in earlier
        ]
        return history, latest["content"]

    def _build_request(self, turns, options):
        history, latest = self._split_history(turns)
        if history:
            contents = history + [{"role": "user", "parts": [{"text": latest}]}]
        else:
            contents = [{"parts": [{"text": latest}]}]

        payload = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        headers = {"x-goog-api-key": self._api_key, "Content-Type": "application/json"}
        return f"{self._base_url}/models/{self._model}:generateContent", payload, headers

    def _parse_response(self, data, turns):
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            block = (data.get("promptFeedback") or {}).get("blockReason")
            raise self._malformed(f"prompt blocked ({block})" if block else "no candidates")

        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        if not isinstance(content, dict):
            reason = candidates[0].get("finishReason") if isinstance(candidates[0], dict) else None
            raise self._malformed(f"no content (finishReason={reason})" if reason else "no content")

        parts = content.get("parts")
        texts = [
            p["text"] for p in parts or []
            if isinstance(p, dict) and isinstance(p.get("text"), str)
        ]
        text = "".join(texts)
        if not text:
            raise self._malformed("candidate has no text parts")

        meta = data.get("usageMetadata") or {}
        usage = self._usage(
            turns, text, meta.get("promptTokenCount"), meta.get("candidatesTokenCount"),
        )
        return text, usage


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


class ClaudeBackend(ProviderAdapter):
    """Anthropic Claude via the Messages API."""

    provider = "claude"

    def __init__(
        self,
        api_key: str | None,
        model: str = "claude-3-haiku-20240307",
        base_url: str = "https://api.anthropic.com/v1",
        timeout: float = DEFAULT_TIMEOUT,
        model_id: str | None = None,
        api_version: str = "2023-06-01",
    ) -> None:
        super().__init__(api_key, model, base_url, timeout, model_id)
        self._api_version = api_version

    def _build_request(self, turns, options):
        payload = {
            "model": self._model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": turns,
        }
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "Content-Type": "application/json",
        }
        return f"{self._base_url}/messages", payload, headers

    def _parse_response(self, data, turns):
        blocks = data.get("content")
        if not isinstance(blocks, list) or not blocks:
            raise self._malformed("no content blocks")
        texts = [
            b["text"] for b in blocks
            if isinstance(b, dict) and b.get("type", "text") == "text" and isinstance(b.get("text"), str)
        ]
        text = "".join(texts)
        if not text:
            raise self._malformed("no text content block")

        usage = data.get("usage") or {}
        return text, self._usage(
            turns, text, usage.get("input_tokens"), usage.get("output_tokens"),
        )


# ---------------------------------------------------------------------------
# GLM
# ---------------------------------------------------------------------------


class GLMBackend(ProviderAdapter):
    """Zhipu GLM via its OpenAI-compatible chat-completions endpoint."""

    provider = "glm"

    def __init__(
        self,
        api_key: str | None,
        model: str = "glm-4.5-flash",
        base_url: str = "https://open.bigmodel.cn/api/paas/v4",
        timeout: float = DEFAULT_TIMEOUT,
        model_id: str | None = None,
    ) -> None:
        super().__init__(api_key, model, base_url, timeout, model_id)

    def _build_request(self, turns, options):
        payload = {
            "model": self._model,
            "messages": turns,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        return f"{self._base_url}/chat/completions", payload, headers

    def _parse_response(self, data, turns):
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise self._malformed("no choices")
        message = choices[0].get("message")
        text = message.get("content") if isinstance(message, dict) else None
        if not isinstance(text, str) or not text:
            raise self._malformed("choice has no message content")

        usage = data.get("usage") or {}
        return text, self._usage(
            turns, text, usage.get("prompt_tokens"), usage.get("completion_tokens"),
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class AdapterRegistry:
    """Adapters keyed by public model id, with a designated primary."""

    def __init__(self, primary_model_id: str) -> None:
        self.primary_model_id = primary_model_id
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter, model_id: str | None = None) -> None:
        self._adapters[model_id or adapter.model_id] = adapter

    def model_ids(self) -> list[str]:
        return list(self._adapters)

    def providers(self) -> dict[str, bool]:
        """Registered provider names mapped to whether a key is configured."""
        return {a.provider: a.configured for a in self._adapters.values()}

    @property
    def primary(self) -> ProviderAdapter:
        try:
            return self._adapters[self.primary_model_id]
        except KeyError:
            raise ConfigurationError(
                f"Primary model '{self.primary_model_id}' has no registered adapter"
            )

    def is_primary(self, adapter: ProviderAdapter) -> bool:
        return adapter is self.primary

    def resolve(self, model_id: str | None) -> ProviderAdapter:
        """Adapter for *model_id*; unknown or missing ids get the primary."""
        if model_id and model_id in self._adapters:
            return self._adapters[model_id]
        if model_id:
            logger.info("Unknown model '%s', using primary '%s'", model_id, self.primary_model_id)
        return self.primary

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def create_registry(config: AppConfig) -> AdapterRegistry:
    """Build one adapter per catalog model from *config*.

    Raises:
        ConfigurationError: The primary model is unknown or its provider has
            no API key.  Other providers without a key only log a warning.
    """
    from polychat.config import resolve_api_key
    from polychat.llm.models import MODEL_CATALOG

    timeout = config.llm.timeout
    registry = AdapterRegistry(primary_model_id=config.llm.primary)

    def _make(provider: str, model_id: str) -> ProviderAdapter:
        if provider == "claude":
            c = config.claude
            return ClaudeBackend(
                resolve_api_key(c.api_key_env), model=c.model, base_url=c.base_url,
                timeout=timeout, model_id=model_id, api_version=c.api_version,
            )
        if provider == "glm":
            g = config.glm
            return GLMBackend(
                resolve_api_key(g.api_key_env), model=g.model, base_url=g.base_url,
                timeout=timeout, model_id=model_id,
            )
        gm = config.gemini
        return GeminiBackend(
            resolve_api_key(gm.api_key_env), model=gm.model, base_url=gm.base_url,
            timeout=timeout, model_id=model_id,
        )

    for info in MODEL_CATALOG:
        adapter = _make(info.provider, info.id)
        registry.register(adapter)
        if not adapter.configured and info.id != config.llm.primary:
            logger.warning(
                "%s API key is not set. %s functionality will be disabled.",
                info.provider, info.name,
            )

    if config.llm.primary not in registry.model_ids():
        raise ConfigurationError(f"Unknown primary model '{config.llm.primary}'")
    if not registry.primary.configured:
        env = getattr(config, registry.primary.provider).api_key_env
        raise ConfigurationError(
            f"{env} is required for the primary provider '{registry.primary.provider}'"
        )
    return registry
