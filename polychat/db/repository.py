"""SQL-backed :class:`ConversationStore` on SQLAlchemy's async ORM."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select

from polychat.conversations.store import (
    Attachment,
    Conversation,
    ConversationStore,
    Message,
    validate_role,
)
from polychat.db.engine import create_engine, create_session_factory
from polychat.db.models import Base, DBConversation, DBMessage
from polychat.errors import NotFoundError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlConversationStore(ConversationStore):
    """Conversation store on any async SQLAlchemy URL.

    ``seq`` is assigned as ``max(seq) + 1`` per conversation while holding a
    per-conversation lock, so it only serialises writers inside this process.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._engine = create_engine(url)
        self._session_factory = create_session_factory(self._engine)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def init(self) -> None:
        """Create tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Conversation tables ready")

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Database engine closed")

    async def create_conversation(self, title: str, user_id: str | None = None) -> Conversation:
        async with self._session_factory() as session:
            now = _utcnow()
            conv = DBConversation(title=title, user_id=user_id, created_at=now, updated_at=now)
            session.add(conv)
            await session.commit()
            return conv.to_domain()

    async def get_conversations(self, user_id: str | None = None) -> list[Conversation]:
        async with self._session_factory() as session:
            stmt = select(DBConversation).order_by(DBConversation.updated_at.desc())
            if user_id is None:
                stmt = stmt.where(DBConversation.user_id.is_(None))
            else:
                stmt = stmt.where(DBConversation.user_id == user_id)
            result = await session.execute(stmt)
            return [c.to_domain() for c in result.scalars().all()]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self._session_factory() as session:
            conv = await session.get(DBConversation, conversation_id)
            return conv.to_domain() if conv is not None else None

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        user_id: str | None = None,
    ) -> Conversation | None:
        async with self._session_factory() as session:
            conv = await session.get(DBConversation, conversation_id)
            if conv is None:
                return None
            if title is not None:
                conv.title = title
            if user_id is not None:
                conv.user_id = user_id
            conv.updated_at = _utcnow()
            await session.commit()
            return conv.to_domain()

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._session_factory() as session:
            await session.execute(
                delete(DBMessage).where(DBMessage.conversation_id == conversation_id)
            )
            result = await session.execute(
                delete(DBConversation).where(DBConversation.id == conversation_id)
            )
            await session.commit()
        self._locks.pop(conversation_id, None)
        return result.rowcount > 0

    async def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        validate_role(role)
        async with self._lock_for(conversation_id):
            async with self._session_factory() as session:
                if await session.get(DBConversation, conversation_id) is None:
                    raise NotFoundError(f"Conversation '{conversation_id}' not found")

                last_seq = await session.scalar(
                    select(func.max(DBMessage.seq)).where(
                        DBMessage.conversation_id == conversation_id
                    )
                )
                msg = DBMessage(
                    conversation_id=conversation_id,
                    seq=(last_seq or 0) + 1,
                    role=role,
                    content=content,
                    attachments=[a.to_dict() for a in attachments] if attachments else None,
                    metadata_=metadata or None,
                    created_at=_utcnow(),
                )
                session.add(msg)
                await session.commit()
                return msg.to_domain()

    async def get_messages(self, conversation_id: str) -> list[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DBMessage)
                .where(DBMessage.conversation_id == conversation_id)
                .order_by(DBMessage.created_at.asc(), DBMessage.seq.asc())
            )
            return [m.to_domain() for m in result.scalars().all()]

    async def delete_messages(self, conversation_id: str) -> bool:
        async with self._lock_for(conversation_id):
            async with self._session_factory() as session:
                if await session.get(DBConversation, conversation_id) is None:
                    return False
                await session.execute(
                    delete(DBMessage).where(DBMessage.conversation_id == conversation_id)
                )
                await session.commit()
        return True
