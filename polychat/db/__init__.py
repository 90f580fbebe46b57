"""Database layer for persistent conversation storage."""

from polychat.db.engine import create_engine, create_session_factory
from polychat.db.repository import SqlConversationStore

__all__ = ["SqlConversationStore", "create_engine", "create_session_factory"]
