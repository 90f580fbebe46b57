"""Conversation storage contract and the in-memory implementation.

The orchestrator only talks to :class:`ConversationStore`; the in-memory
store below and ``polychat.db.repository.SqlConversationStore`` are
interchangeable.

Ordering rule: messages of a conversation come back by ``created_at``
ascending, ties broken by insertion sequence.  That list is replayed verbatim
to the provider as history, so appends to one conversation are serialised.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from polychat.errors import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
VALID_ROLES = ("user", "assistant")


def _now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    """Generate a new UUID for primary keys."""
    return uuid.uuid4().hex


def _iso(value: datetime) -> str:
    return value.isoformat()


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return _now()


def decoded_size(data: str) -> int:
    """Byte length of a base64 payload, without decoding it."""
    data = "".join(data.split())
    padding = min(len(data) - len(data.rstrip("=")), 2)
    return max(len(data) * 3 // 4 - padding, 0)


# ── Data model ──────────────────────────────────────────────────────


@dataclass
class Attachment:
    """A file stored alongside a user message (display-only)."""

    filename: str
    mime_type: str
    size: int
    data: str  # base64
    id: str = field(default_factory=_new_id)
    uploaded_at: datetime = field(default_factory=_now)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Attachment:
        """Build from the camelCase wire shape (snake_case is accepted too)."""
        return cls(
            id=str(raw.get("id") or _new_id()),
            filename=raw.get("filename", ""),
            mime_type=raw.get("mimeType") or raw.get("mime_type") or "application/octet-stream",
            size=int(raw.get("size", 0)),
            data=raw.get("data", ""),
            uploaded_at=_parse_time(raw.get("uploadedAt") or raw.get("uploaded_at")),
        )

    @property
    def payload_size(self) -> int:
        """Decoded size of ``data``, independent of the declared ``size``."""
        return decoded_size(self.data)

    def copy(self) -> Attachment:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "data": self.data,
            "uploadedAt": _iso(self.uploaded_at),
        }


@dataclass
class Conversation:
    id: str
    title: str
    user_id: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def copy(self) -> Conversation:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Message:
    """A single turn half.  Never mutated after creation."""

    id: str
    conversation_id: str
    role: str
    content: str
    attachments: list[Attachment] | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_now)
    seq: int = 0

    def copy(self) -> Message:
        """Detached copy, including the attachment and metadata containers."""
        return replace(
            self,
            attachments=[a.copy() for a in self.attachments] if self.attachments else None,
            metadata=deepcopy(self.metadata) if self.metadata else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "attachments": (
                [a.to_dict() for a in self.attachments] if self.attachments else None
            ),
            "metadata": self.metadata,
            "createdAt": _iso(self.created_at),
        }


def validate_role(role: str) -> None:
    if role not in VALID_ROLES:
        raise InvalidInputError(f"Invalid message role '{role}'; expected 'user' or 'assistant'.")


# ── Contract ────────────────────────────────────────────────────────


class ConversationStore(abc.ABC):
    """Async persistence contract for conversations and their messages."""

    async def init(self) -> None:
        """Prepare the backend (create tables, open pools).  Optional."""

    @abc.abstractmethod
    async def create_conversation(self, title: str, user_id: str | None = None) -> Conversation:
        """Create and return a new, empty conversation."""

    @abc.abstractmethod
    async def get_conversations(self, user_id: str | None = None) -> list[Conversation]:
        """Conversations owned by *user_id*, most recently updated first.

        ``None`` lists the anonymous conversations.
        """

    @abc.abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Return the conversation or ``None``."""

    @abc.abstractmethod
    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        user_id: str | None = None,
    ) -> Conversation | None:
        """Patch *title* / *user_id* and bump ``updated_at``.  ``None`` if missing."""

    async def touch_conversation(self, conversation_id: str) -> Conversation | None:
        """Bump ``updated_at`` without changing anything else."""
        return await self.update_conversation(conversation_id)

    @abc.abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its messages.  ``True`` if it existed."""

    @abc.abstractmethod
    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message.  Raises :class:`NotFoundError` for unknown ids."""

    @abc.abstractmethod
    async def get_messages(self, conversation_id: str) -> list[Message]:
        """Messages in replay order; empty for unknown conversations."""

    @abc.abstractmethod
    async def delete_messages(self, conversation_id: str) -> bool:
        """Clear a conversation's history, keeping the conversation itself."""

    async def close(self) -> None:
        """Release resources.  Optional."""


# ── In-memory implementation ────────────────────────────────────────


class InMemoryConversationStore(ConversationStore):
    """Dict-backed store, suitable for single-process deployments and tests."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._seq = 0

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def create_conversation(self, title: str, user_id: str | None = None) -> Conversation:
        now = _now()
        conv = Conversation(
            id=_new_id(), title=title, user_id=user_id, created_at=now, updated_at=now,
        )
        self._conversations[conv.id] = conv
        self._messages[conv.id] = []
        logger.debug("Created conversation %s", conv.id)
        return conv.copy()

    async def get_conversations(self, user_id: str | None = None) -> list[Conversation]:
        convs = [c.copy() for c in self._conversations.values() if c.user_id == user_id]
        return sorted(convs, key=lambda c: c.updated_at, reverse=True)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conv = self._conversations.get(conversation_id)
        return conv.copy() if conv is not None else None

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        user_id: str | None = None,
    ) -> Conversation | None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        if title is not None:
            conv.title = title
        if user_id is not None:
            conv.user_id = user_id
        conv.updated_at = _now()
        return conv.copy()

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            return False
        self._messages.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        return True

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        validate_role(role)
        if conversation_id not in self._conversations:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")

        async with self._lock_for(conversation_id):
            self._seq += 1
            msg = Message(
                id=_new_id(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                attachments=attachments or None,
                metadata=metadata or None,
                seq=self._seq,
            ).copy()
            self._messages.setdefault(conversation_id, []).append(msg)
        return msg.copy()

    async def get_messages(self, conversation_id: str) -> list[Message]:
        msgs = sorted(self._messages.get(conversation_id, []), key=lambda m: (m.created_at, m.seq))
        return [m.copy() for m in msgs]

    async def delete_messages(self, conversation_id: str) -> bool:
        if conversation_id not in self._conversations:
            return False
        async with self._lock_for(conversation_id):
            self._messages[conversation_id] = []
        return True
