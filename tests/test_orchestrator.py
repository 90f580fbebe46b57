"""Tests for the chat turn orchestrator."""
from __future__ import annotations

import asyncio

import pytest

from polychat.chat.orchestrator import ChatOrchestrator, make_title
from polychat.conversations.store import (
    MAX_ATTACHMENT_BYTES,
    Attachment,
    InMemoryConversationStore,
)
from polychat.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidInputError,
    NotFoundError,
    ProviderError,
    ReplyFailedError,
)
from polychat.llm.backend import CompletionOptions

from tests.fakes import FakeAdapter, make_registry, network_failure


def _attachment(size: int = 3) -> Attachment:
    return Attachment(filename="pic.png", mime_type="image/png", size=size, data="AAAA")


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def gemini() -> FakeAdapter:
    return FakeAdapter("gemini", "gemini-1.5-flash", reply="**Primary** reply")


@pytest.fixture
def claude() -> FakeAdapter:
    return FakeAdapter("claude", "claude-3-haiku", reply="Claude _reply_")


@pytest.fixture
def orchestrator(store, gemini, claude) -> ChatOrchestrator:
    return ChatOrchestrator(store=store, registry=make_registry(gemini, claude))


class TestMakeTitle:
    def test_short_text_kept(self) -> None:
        assert make_title("Hello there") == "Hello there"

    def test_long_text_ellipsized(self) -> None:
        text = "x" * 60
        assert make_title(text) == "x" * 50 + "..."

    def test_exactly_fifty(self) -> None:
        assert make_title("y" * 50) == "y" * 50

    def test_blank_text(self) -> None:
        assert make_title("   ") == "New Conversation"

    def test_raw_text_is_sliced(self) -> None:
        assert make_title("  hi") == "  hi"
        assert make_title(" " + "z" * 50) == " " + "z" * 49 + "..."


class TestOptions:
    def test_invalid_options_fail_at_construction(self, store) -> None:
        with pytest.raises(ConfigurationError):
            ChatOrchestrator(
                store=store,
                registry=make_registry(),
                options=CompletionOptions(temperature=1.5),
            )


class TestSendMessage:
    async def test_new_conversation_turn(self, orchestrator, store, gemini) -> None:
        result = await orchestrator.send_message(None, "What is up?", [], "gemini-1.5-flash")

        conv = await store.get_conversation(result.conversation_id)
        assert conv is not None
        assert conv.title == "What is up?"

        assert result.user_message.role == "user"
        assert result.user_message.content == "What is up?"
        assert result.user_message.metadata == {"tokens": 3}
        assert result.user_message.attachments is None

        assistant = result.assistant_message
        assert assistant.role == "assistant"
        assert assistant.content == "Primary reply"
        assert assistant.attachments is None
        assert assistant.metadata["model"] == "gemini-1.5-flash"
        assert assistant.metadata["tokens"] == 3
        assert assistant.metadata["prompt_tokens"] == 7
        assert assistant.metadata["completion_tokens"] == 3

        msgs = await store.get_messages(result.conversation_id)
        assert [m.id for m in msgs] == [result.user_message.id, assistant.id]

    async def test_usage_totals_consistent(self, orchestrator) -> None:
        result = await orchestrator.send_message(None, "hi", [], None)
        meta = result.assistant_message.metadata
        assert meta["total_tokens"] == meta["prompt_tokens"] + meta["completion_tokens"]

    async def test_history_includes_new_user_message(self, orchestrator, gemini) -> None:
        first = await orchestrator.send_message(None, "first", [], None)
        await orchestrator.send_message(first.conversation_id, "second", [], None)

        history = gemini.calls[-1]
        assert [(m.role, m.content) for m in history] == [
            ("user", "first"),
            ("assistant", "Primary reply"),
            ("user", "second"),
        ]

    async def test_updated_at_bumped(self, orchestrator, store) -> None:
        first = await orchestrator.send_message(None, "first", [], None)
        before = (await store.get_conversation(first.conversation_id)).updated_at
        await asyncio.sleep(0.01)
        await orchestrator.send_message(first.conversation_id, "again", [], None)
        after = (await store.get_conversation(first.conversation_id)).updated_at
        assert after > before

    async def test_selected_model_is_used(self, orchestrator, gemini, claude) -> None:
        result = await orchestrator.send_message(None, "hi", [], "claude-3-haiku")
        assert result.assistant_message.content == "Claude reply"
        assert result.assistant_message.metadata["model"] == "claude-3-haiku"
        assert result.assistant_message.metadata["provider"] == "claude"
        assert len(claude.calls) == 1
        assert gemini.calls == []

    async def test_unknown_model_uses_primary(self, orchestrator, gemini) -> None:
        result = await orchestrator.send_message(None, "hi", [], "gpt-imaginary")
        assert result.assistant_message.metadata["model"] == "gemini-1.5-flash"
        assert len(gemini.calls) == 1

    async def test_user_id_recorded(self, orchestrator, store) -> None:
        result = await orchestrator.send_message(None, "hi", [], None, user_id="alice")
        convs = await store.get_conversations("alice")
        assert [c.id for c in convs] == [result.conversation_id]

    async def test_attachment_only_message(self, orchestrator, gemini) -> None:
        result = await orchestrator.send_message(None, "  ", [_attachment()], None)
        assert result.user_message.attachments is not None
        assert result.user_message.attachments[0].filename == "pic.png"
        assert result.user_message.metadata == {"tokens": 1}


class TestValidation:
    async def test_empty_message_rejected(self, orchestrator, store, gemini) -> None:
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(None, "", [], "gemini-1.5-flash")
        assert await store.get_conversations(None) == []
        assert gemini.calls == []

    async def test_whitespace_message_rejected(self, orchestrator, store) -> None:
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(None, " \n\t ", [], None)
        assert await store.get_conversations(None) == []

    async def test_empty_message_in_existing_conversation(self, orchestrator, store) -> None:
        conv = await store.create_conversation("c")
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(conv.id, "", [], None)
        assert await store.get_messages(conv.id) == []

    async def test_oversized_attachment_rejected(self, orchestrator, store) -> None:
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(
                None, "look", [_attachment(MAX_ATTACHMENT_BYTES + 1)], None,
            )
        assert await store.get_conversations(None) == []

    async def test_unknown_conversation(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.send_message("missing", "hi", [], None)

    async def test_oversized_payload_with_small_declared_size(self, orchestrator, store) -> None:
        data = "A" * ((MAX_ATTACHMENT_BYTES // 3 + 1) * 4)
        att = Attachment(filename="big.bin", mime_type="image/png", size=3, data=data)
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(None, "look", [att], None)
        assert await store.get_conversations(None) == []

    async def test_declared_size_must_match_payload(self, orchestrator, store) -> None:
        att = Attachment(filename="a.txt", mime_type="text/plain", size=99, data="aGVsbG8=")
        with pytest.raises(InvalidInputError):
            await orchestrator.send_message(None, "look", [att], None)
        assert await store.get_conversations(None) == []


class TestFallback:
    async def test_falls_back_to_primary(self, store, gemini) -> None:
        claude = FakeAdapter("claude", "claude-3-haiku", error=network_failure("claude"))
        orchestrator = ChatOrchestrator(store=store, registry=make_registry(gemini, claude))

        result = await orchestrator.send_message(None, "hi", [], "claude-3-haiku")

        assert result.assistant_message.metadata["model"] == "gemini-1.5-flash"
        assert result.assistant_message.metadata["provider"] == "gemini"
        assert result.assistant_message.content == "Primary reply"
        assert len(claude.calls) == 1
        assert len(gemini.calls) == 1
        assert gemini.calls[0] == claude.calls[0]

    async def test_fallback_disabled(self, store, gemini) -> None:
        claude = FakeAdapter("claude", "claude-3-haiku", error=network_failure("claude"))
        orchestrator = ChatOrchestrator(
            store=store, registry=make_registry(gemini, claude), fallback_enabled=False,
        )
        with pytest.raises(ReplyFailedError) as exc_info:
            await orchestrator.send_message(None, "hi", [], "claude-3-haiku")
        assert exc_info.value.kind is ErrorKind.NETWORK_FAILURE
        assert gemini.calls == []

    async def test_primary_failure_not_retried(self, store, claude) -> None:
        gemini = FakeAdapter("gemini", "gemini-1.5-flash", error=network_failure("gemini"))
        orchestrator = ChatOrchestrator(store=store, registry=make_registry(gemini, claude))

        with pytest.raises(ReplyFailedError) as exc_info:
            await orchestrator.send_message(None, "hi", [], "gemini-1.5-flash")

        assert len(gemini.calls) == 1
        assert claude.calls == []
        assert exc_info.value.kind is ErrorKind.NETWORK_FAILURE

    async def test_both_fail_surfaces_primary_error(self, store) -> None:
        gemini = FakeAdapter(
            "gemini", "gemini-1.5-flash",
            error=ProviderError(ErrorKind.HTTP_ERROR, "Quota exceeded", status=429, provider="gemini"),
        )
        claude = FakeAdapter("claude", "claude-3-haiku", error=network_failure("claude"))
        orchestrator = ChatOrchestrator(store=store, registry=make_registry(gemini, claude))

        with pytest.raises(ReplyFailedError) as exc_info:
            await orchestrator.send_message(None, "hi", [], "claude-3-haiku")

        err = exc_info.value
        assert err.kind is ErrorKind.HTTP_ERROR
        assert err.status_code == 429
        assert len(gemini.calls) == 1
        assert len(claude.calls) == 1

    async def test_failed_reply_keeps_user_message(self, store) -> None:
        gemini = FakeAdapter("gemini", "gemini-1.5-flash", error=network_failure("gemini"))
        orchestrator = ChatOrchestrator(store=store, registry=make_registry(gemini))

        with pytest.raises(ReplyFailedError) as exc_info:
            await orchestrator.send_message(None, "are you there?", [], None)

        err = exc_info.value
        msgs = await store.get_messages(err.conversation_id)
        assert [(m.role, m.content) for m in msgs] == [("user", "are you there?")]
        assert err.user_message.id == msgs[0].id

        body = err.to_dict()
        assert body["stage"] == "reply"
        assert body["provider"] == "gemini"
        assert body["error"] == "NetworkFailure"
        assert body["conversationId"] == err.conversation_id
        assert body["userMessage"]["content"] == "are you there?"

    async def test_rejected_history_still_reports_saved_message(self, store) -> None:
        gemini = FakeAdapter(
            "gemini", "gemini-1.5-flash",
            error=InvalidInputError("The last message sent to Gemini must be a user message"),
        )
        orchestrator = ChatOrchestrator(store=store, registry=make_registry(gemini))

        with pytest.raises(ReplyFailedError) as exc_info:
            await orchestrator.send_message(None, "hello", [], None)

        err = exc_info.value
        assert err.kind is ErrorKind.INVALID_INPUT
        assert err.status_code == 500
        body = err.to_dict()
        assert body["stage"] == "reply"
        assert "provider" not in body
        msgs = await store.get_messages(err.conversation_id)
        assert [(m.role, m.content) for m in msgs] == [("user", "hello")]
