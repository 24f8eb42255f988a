"""Build orchestration with persistence of results, checkpoints and audit entries."""
from __future__ import annotations

from dataclasses import dataclass
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..persistence.models import AuditLog, Build, BuildCheckpointRecord, BuildStatus, utcnow
from ..persistence.storage import ArtifactStorage
from .errors import CheckpointConsumedError
from .orchestrator import BuildCheckpoint, BuildRequest, BuildResult, DeploymentOrchestrator
from .types import Credentials, ProgressCallback, ProjectConfig

logger = structlog.get_logger(__name__)


@dataclass
class BuildCreateParams:
    request: BuildRequest
    principal: str = "system"
    correlation_id: str = "system"


def _status(result: BuildResult) -> BuildStatus:
    if result.success:
        return BuildStatus.succeeded
    if result.cancelled:
        return BuildStatus.cancelled
    return BuildStatus.failed


class BuildService:
    def __init__(
        self,
        session: AsyncSession,
        orchestrator: DeploymentOrchestrator,
        storage: ArtifactStorage | None = None,
    ) -> None:
        self._session = session
        self._orchestrator = orchestrator
        self._storage = storage or ArtifactStorage()
        self._settings = get_settings()

    async def create_build(self, params: BuildCreateParams, progress: ProgressCallback | None = None) -> Build:
        result = await self._orchestrator.run(params.request, progress=progress)
        return await self._persist(params, result)

    async def resume_build(
        self,
        build_id: str,
        credentials: Credentials,
        principal: str = "system",
        correlation_id: str = "system",
        progress: ProgressCallback | None = None,
    ) -> Build:
        build = await self.get_build(build_id)
        if build is None:
            raise LookupError(f"Build {build_id} not found")
        record = await self._active_checkpoint(build)
        checkpoint = BuildCheckpoint.from_payload(record.payload)
        record.consumed_at = utcnow()

        request = BuildRequest(
            instruction=build.instruction,
            project=ProjectConfig.from_context(build.project),
            owner_id=build.owner_id,
            credentials=credentials,
            environment=build.environment,
            bot_id=build.bot_id,
        )
        result = await self._orchestrator.run(request, checkpoint=checkpoint, progress=progress)
        params = BuildCreateParams(request=request, principal=principal, correlation_id=correlation_id)
        return await self._persist(params, result, resumed_from=build.id)

    async def get_build(self, build_id: str) -> Build | None:
        return await self._session.get(Build, build_id)

    async def graph_csv(self, build: Build) -> str | None:
        if not build.graph_ref:
            return None
        return await self._storage.get_text(build.graph_ref)

    async def _active_checkpoint(self, build: Build) -> BuildCheckpointRecord:
        rows = await self._session.execute(
            select(BuildCheckpointRecord)
            .where(BuildCheckpointRecord.build_id == build.id)
            .order_by(BuildCheckpointRecord.created_at.desc())
        )
        records = list(rows.scalars())
        if not records:
            raise LookupError(f"Build {build.id} has no checkpoint")
        for record in records:
            if record.consumed_at is None and record.superseded_at is None:
                return record
        raise CheckpointConsumedError(f"Checkpoint for build {build.id} was already used or superseded")

    async def _persist(self, params: BuildCreateParams, result: BuildResult, resumed_from: str | None = None) -> Build:
        request = params.request
        build = Build(
            bot_id=result.bot_id,
            session_id=result.session_id,
            owner_id=request.owner_id,
            environment=request.environment or self._settings.tuning.default_environment,
            status=_status(result),
            instruction=request.instruction,
            project=request.project.as_context(),
            version_id=result.version_id,
            node_count=result.node_count,
            dependency_count=result.dependency_count,
            iterations=result.iterations,
            warnings=list(result.warnings),
            unresolved_scripts=list(result.unresolved_scripts),
            residual_defects=[defect.as_dict() for defect in result.residual_defects],
            failed_rows=[row.as_dict() for row in result.failed_rows],
            timings_ms=dict(result.timings_ms),
            preview_url=result.preview_url,
            preview_id=result.preview_id,
            export_url=result.export_url,
            export_id=result.export_id,
            error=result.error,
            resumed_from=resumed_from,
        )
        if result.graph is not None:
            build.graph_ref = await self._storage.put_text(result.graph.serialize())
        self._session.add(build)
        await self._session.flush()

        if result.checkpoint is not None:
            await self._store_checkpoint(build, result.checkpoint)
        self._session.add(
            AuditLog(
                principal=params.principal,
                action="build.resumed" if resumed_from else "build.created",
                new_val={"buildId": build.id, "botId": build.bot_id, "status": build.status.value},
                correlation_id=params.correlation_id,
            )
        )
        logger.info("build_service.persisted", build_id=build.id, bot_id=build.bot_id, status=build.status.value)
        return build

    async def _store_checkpoint(self, build: Build, checkpoint: BuildCheckpoint) -> None:
        now = utcnow()
        older = await self._session.execute(
            select(BuildCheckpointRecord).where(
                BuildCheckpointRecord.bot_id == checkpoint.bot_id,
                BuildCheckpointRecord.consumed_at.is_(None),
                BuildCheckpointRecord.superseded_at.is_(None),
            )
        )
        for record in older.scalars():
            record.superseded_at = now
        self._session.add(
            BuildCheckpointRecord(
                build_id=build.id,
                bot_id=checkpoint.bot_id,
                session_id=checkpoint.session_id,
                refined=checkpoint.refined,
                payload=checkpoint.to_payload(),
            )
        )
        await self._session.flush()


__all__ = ["BuildCreateParams", "BuildService"]
