"""SQLAlchemy 2.x ORM models for conversation persistence."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class DBConversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(200), default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    messages: Mapped[list[DBMessage]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by=lambda: [DBMessage.created_at, DBMessage.seq],
    )

    __table_args__ = (
        Index("idx_conversations_user_updated", "user_id", "updated_at"),
    )

    def to_domain(self):
        from polychat.conversations.store import Conversation

        return Conversation(
            id=self.id,
            title=self.title,
            user_id=self.user_id,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )


class DBMessage(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    conversation_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("conversations.id", ondelete="CASCADE")
    )
    seq: Mapped[int] = mapped_column(Integer, default=0)
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    conversation: Mapped[DBConversation] = relationship(back_populates="messages")

    __table_args__ = (
        Index("idx_messages_conv", "conversation_id", "created_at", "seq"),
    )

    def to_domain(self):
        from polychat.conversations.store import Attachment, Message

        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            role=self.role,
            content=self.content,
            attachments=(
                [Attachment.from_dict(a) for a in self.attachments] if self.attachments else None
            ),
            metadata=self.metadata_,
            created_at=_aware(self.created_at),
            seq=self.seq,
        )
