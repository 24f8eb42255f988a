"""Async engine and session factory for build records and the defect ledger."""
from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import get_settings
from .models import Base

logger = structlog.get_logger(__name__)


@dataclass
class _Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]


_database: _Database | None = None


def _current() -> _Database:
    global _database
    if _database is None:
        engine = create_async_engine(get_settings().storage.database_url)
        _database = _Database(engine, async_sessionmaker(engine, expire_on_commit=False))
        logger.info("db.engine_created", dialect=engine.dialect.name)
    return _database


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _current().sessions


async def init_db() -> None:
    """Create missing tables on the configured database."""
    async with _current().engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Close pooled connections; the next access rebinds to the current settings."""
    global _database
    if _database is not None:
        await _database.engine.dispose()
        _database = None


__all__ = ["dispose_engine", "get_session_factory", "init_db"]
