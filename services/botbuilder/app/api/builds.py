"""Build management API."""
from __future__ import annotations

import uuid
from typing import Any, List, Literal

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.build_service import BuildCreateParams, BuildService
from ..domain.errors import CheckpointConsumedError, CheckpointMismatchError
from ..domain.orchestrator import BuildRequest, DeploymentOrchestrator
from ..domain.types import Credentials, ProjectConfig
from ..persistence.models import Build, BuildCheckpointRecord
from .deps import get_db_session, get_orchestrator

router = APIRouter(prefix="/builds", tags=["builds"])


class ProjectPayload(BaseModel):
    client_name: str = Field(alias="clientName", min_length=1)
    project_name: str = Field(alias="projectName", min_length=1)
    project_type: str = Field(default="custom", alias="projectType")
    description: str = ""
    target_company: str = Field(default="", alias="targetCompany")
    key_features: List[str] = Field(default_factory=list, alias="keyFeatures")
    branding: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True)

    def to_domain(self) -> ProjectConfig:
        return ProjectConfig(
            client_name=self.client_name,
            project_name=self.project_name,
            project_type=self.project_type,
            description=self.description,
            target_company=self.target_company,
            key_features=list(self.key_features),
            branding=self.branding,
        )


class BuildCreateRequest(BaseModel):
    instruction: str = Field(min_length=1, description="Natural-language description of the bot")
    project: ProjectPayload
    owner_id: str = Field(alias="ownerId")
    token: str = Field(description="Hosting API token, passed through to the hosting system")
    environment: Literal["sandbox", "production"] | None = None
    bot_id: str | None = Field(default=None, alias="botId")

    model_config = ConfigDict(populate_by_name=True)


class BuildResumeRequest(BaseModel):
    token: str


class BuildSummaryResponse(BaseModel):
    id: str
    bot_id: str = Field(alias="botId")
    session_id: str = Field(alias="sessionId")
    status: str
    environment: str
    version_id: str | None = Field(alias="versionId")
    node_count: int = Field(alias="nodeCount")
    dependency_count: int = Field(alias="dependencyCount")
    iterations: int
    warnings: List[str]
    unresolved_scripts: List[str] = Field(alias="unresolvedScripts")
    residual_defects: List[dict[str, Any]] = Field(alias="residualDefects")
    failed_rows: List[dict[str, Any]] = Field(alias="failedRows")
    timings_ms: dict[str, int] = Field(alias="timingsMs")
    preview_url: str | None = Field(alias="previewUrl")
    preview_id: str | None = Field(alias="previewId")
    export_url: str | None = Field(alias="exportUrl")
    export_id: str | None = Field(alias="exportId")
    error: str | None
    resumable: bool
    resumed_from: str | None = Field(alias="resumedFrom")
    created_at: str | None = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


def _build_not_found(build_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Build {build_id} not found")


async def _build_summary(session: AsyncSession, build: Build) -> BuildSummaryResponse:
    active = await session.execute(
        select(BuildCheckpointRecord.id).where(
            BuildCheckpointRecord.build_id == build.id,
            BuildCheckpointRecord.consumed_at.is_(None),
            BuildCheckpointRecord.superseded_at.is_(None),
        )
    )
    return BuildSummaryResponse(
        id=build.id,
        botId=build.bot_id,
        sessionId=build.session_id,
        status=build.status.value,
        environment=build.environment,
        versionId=build.version_id,
        nodeCount=build.node_count,
        dependencyCount=build.dependency_count,
        iterations=build.iterations,
        warnings=build.warnings,
        unresolvedScripts=build.unresolved_scripts,
        residualDefects=build.residual_defects,
        failedRows=build.failed_rows,
        timingsMs=build.timings_ms,
        previewUrl=build.preview_url,
        previewId=build.preview_id,
        exportUrl=build.export_url,
        exportId=build.export_id,
        error=build.error,
        resumable=active.first() is not None,
        resumedFrom=build.resumed_from,
        createdAt=build.created_at.isoformat() if build.created_at else None,
    )


@router.post("", response_model=BuildSummaryResponse, response_model_by_alias=True, status_code=status.HTTP_201_CREATED)
async def create_build(
    request: BuildCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    service = BuildService(session, orchestrator)
    try:
        build = await service.create_build(
            BuildCreateParams(
                request=BuildRequest(
                    instruction=request.instruction,
                    project=request.project.to_domain(),
                    owner_id=request.owner_id,
                    credentials=Credentials(request.token),
                    environment=request.environment,
                    bot_id=request.bot_id,
                ),
                principal="api",
                correlation_id=str(uuid.uuid4()),
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return await _build_summary(session, build)


@router.get("/{build_id}", response_model=BuildSummaryResponse, response_model_by_alias=True)
async def get_build(build_id: str, session: AsyncSession = Depends(get_db_session)):
    build = await session.get(Build, build_id)
    if not build:
        raise _build_not_found(build_id)
    return await _build_summary(session, build)


@router.get("/{build_id}/graph.csv", response_class=PlainTextResponse)
async def get_build_graph(
    build_id: str,
    session: AsyncSession = Depends(get_db_session),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    service = BuildService(session, orchestrator)
    build = await service.get_build(build_id)
    if not build:
        raise _build_not_found(build_id)
    text = await service.graph_csv(build)
    if text is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Build produced no graph")
    return PlainTextResponse(text, media_type="text/csv")


@router.post(
    "/{build_id}/resume",
    response_model=BuildSummaryResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def resume_build(
    build_id: str,
    request: BuildResumeRequest,
    session: AsyncSession = Depends(get_db_session),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    service = BuildService(session, orchestrator)
    try:
        build = await service.resume_build(
            build_id,
            Credentials(request.token),
            principal="api",
            correlation_id=str(uuid.uuid4()),
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (CheckpointConsumedError, CheckpointMismatchError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return await _build_summary(session, build)


__all__ = ["router"]
