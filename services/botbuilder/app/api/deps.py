"""FastAPI dependency helpers."""
from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.defect_ledger import DefectLedger
from ..domain.orchestrator import DeploymentOrchestrator
from ..persistence.db import get_session_factory


async def get_db_session() -> AsyncIterator[AsyncSession]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_orchestrator() -> DeploymentOrchestrator:
    return DeploymentOrchestrator.from_settings(recorder=DefectLedger(get_session_factory()))


__all__ = ["get_db_session", "get_orchestrator"]
