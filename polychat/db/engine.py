"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


def create_engine(url: str) -> AsyncEngine:
    """Create an async engine for *url*.

    SQLite files get their parent directory created; pool sizing only
    applies to server databases.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(url, echo=False)
    else:
        engine = create_async_engine(
            url,
            pool_size=5,
            max_overflow=10,
            echo=False,
        )
    logger.info("Database engine initialized (%s)", parsed.get_backend_name())
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
