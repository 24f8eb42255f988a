"""End-to-end build pipeline: generate, refine, resolve, publish, preview, export."""
from __future__ import annotations

import asyncio
import contextlib
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

import httpx
import structlog
from opentelemetry import trace

from ..config import BuilderSettings, PipelineTuning, get_settings
from .dependencies import DependencyResolution, ScriptDependencyResolver
from .errors import BuilderError, CheckpointConsumedError, CheckpointMismatchError, PublishFailure
from .exporter import SheetExporter
from .flow_graph import FlowGraph
from .http import bounded
from .oracle import GenerationOracle
from .preview import PreviewProvisioner
from .publisher import Publisher
from .refinement import DefectRecorder, Oracle, RefinementLoop, RefinementOutcome, Validator
from .script_registry import BundledScriptRegistry, RemoteScriptRegistry
from .types import (
    BuildStep,
    Credentials,
    FailedRow,
    ProgressCallback,
    ProgressUpdate,
    ProjectConfig,
    ScriptDescriptor,
    ValidationDefect,
)
from .validator import ValidatorAdapter

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

_BOT_ID_RE = re.compile(r"^[A-Za-z0-9]+\.[A-Za-z0-9]+$")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")

_STEP_PROGRESS = {
    BuildStep.generate: 10,
    BuildStep.refine: 30,
    BuildStep.resolve_dependencies: 55,
    BuildStep.publish: 70,
    BuildStep.provision_preview: 85,
    BuildStep.export: 85,
    BuildStep.done: 100,
}


def _clean_part(value: str) -> str:
    cleaned = _NON_ALNUM_RE.sub("", value)
    return cleaned[:1].upper() + cleaned[1:]


def generate_bot_id(client_name: str, project_name: str) -> str:
    """Derive ``Client.Project`` from free-text names."""
    return f"{_clean_part(client_name)}.{_clean_part(project_name)}"


def validate_bot_id(bot_id: str) -> None:
    if not bot_id:
        raise ValueError("Bot ID is required")
    parts = bot_id.split(".")
    if len(parts) != 2 or not all(parts):
        raise ValueError("Bot ID must be in format: CustomerName.BotName")
    if not parts[1][0].isupper():
        raise ValueError("Bot name must start with an uppercase letter")
    if not _BOT_ID_RE.match(bot_id):
        raise ValueError("Bot ID can only contain letters and numbers")


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline steps."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BuildCheckpoint:
    """Resumable snapshot of a failed build.

    ``refined`` is true when the graph already went through refinement, in
    which case a resumed build skips both generation and refinement.
    """

    session_id: str
    bot_id: str
    graph: FlowGraph
    project: ProjectConfig
    instruction: str
    refined: bool
    custom_scripts: list[ScriptDescriptor] = field(default_factory=list)
    consumed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def consume(self, bot_id: str) -> None:
        if bot_id != self.bot_id:
            raise CheckpointMismatchError(f"Checkpoint belongs to {self.bot_id}, not {bot_id}")
        if self.consumed:
            raise CheckpointConsumedError(f"Checkpoint for session {self.session_id} was already used")
        self.consumed = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "botId": self.bot_id,
            "graph": self.graph.serialize(),
            "project": self.project.as_context(),
            "instruction": self.instruction,
            "refined": self.refined,
            "customScripts": [script.as_upload() for script in self.custom_scripts],
            "consumed": self.consumed,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BuildCheckpoint":
        created = payload.get("createdAt")
        return cls(
            session_id=payload["sessionId"],
            bot_id=payload["botId"],
            graph=FlowGraph.parse(payload["graph"]),
            project=ProjectConfig.from_context(payload.get("project") or {}),
            instruction=payload.get("instruction", ""),
            refined=bool(payload.get("refined")),
            custom_scripts=[
                ScriptDescriptor(name=entry["name"], content=entry.get("content", ""), source="generated")
                for entry in payload.get("customScripts") or []
            ],
            consumed=bool(payload.get("consumed")),
            created_at=datetime.fromisoformat(created) if created else datetime.now(timezone.utc),
        )


@dataclass
class BuildRequest:
    instruction: str
    project: ProjectConfig
    owner_id: str
    credentials: Credentials
    environment: str | None = None
    session_id: str | None = None
    bot_id: str | None = None


@dataclass
class BuildResult:
    bot_id: str
    session_id: str
    success: bool = False
    cancelled: bool = False
    version_id: str | None = None
    node_count: int = 0
    dependency_count: int = 0
    iterations: int = 0
    unresolved_scripts: list[str] = field(default_factory=list)
    residual_defects: list[ValidationDefect] = field(default_factory=list)
    fixes_applied: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    preview_url: str | None = None
    preview_id: str | None = None
    export_url: str | None = None
    export_id: str | None = None
    timings_ms: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    failed_rows: list[FailedRow] = field(default_factory=list)
    checkpoint: BuildCheckpoint | None = None
    graph: FlowGraph | None = None
    scripts: list[ScriptDescriptor] = field(default_factory=list)


@dataclass
class _BuildState:
    """Mutable bookkeeping for one run."""

    request: BuildRequest
    result: BuildResult
    graph: FlowGraph | None = None
    refined: bool = False
    custom_scripts: dict[str, ScriptDescriptor] = field(default_factory=dict)

    def checkpoint(self) -> BuildCheckpoint | None:
        if self.graph is None:
            return None
        return BuildCheckpoint(
            session_id=self.result.session_id,
            bot_id=self.result.bot_id,
            graph=self.graph.copy(),
            project=self.request.project,
            instruction=self.request.instruction,
            refined=self.refined,
            custom_scripts=list(self.custom_scripts.values()),
        )


class DeploymentOrchestrator:
    """Sequence the build steps and apply each step's failure policy.

    Generate, refine and publish are critical: their failure ends the build
    with an error and, once a graph exists, a checkpoint. Dependency
    resolution, preview provisioning and export only degrade the result with
    a warning.
    """

    def __init__(
        self,
        oracle: Oracle,
        validator: Validator,
        resolver: ScriptDependencyResolver,
        publisher: Publisher,
        preview: PreviewProvisioner,
        exporter: SheetExporter,
        *,
        tuning: PipelineTuning | None = None,
        recorder: DefectRecorder | None = None,
    ) -> None:
        self._oracle = oracle
        self._validator = validator
        self._resolver = resolver
        self._publisher = publisher
        self._preview = preview
        self._exporter = exporter
        self._tuning = tuning or get_settings().tuning
        self._refinement = RefinementLoop.from_tuning(oracle, validator, self._tuning, recorder=recorder)

    @classmethod
    def from_settings(
        cls,
        settings: BuilderSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        registry: BundledScriptRegistry | None = None,
        recorder: DefectRecorder | None = None,
    ) -> "DeploymentOrchestrator":
        settings = settings or get_settings()
        resolver = ScriptDependencyResolver(registry or BundledScriptRegistry(), RemoteScriptRegistry(settings, client))
        return cls(
            GenerationOracle(settings, client),
            ValidatorAdapter(settings, client),
            resolver,
            Publisher(settings, client),
            PreviewProvisioner(settings, client),
            SheetExporter(settings, client),
            tuning=settings.tuning,
            recorder=recorder,
        )

    async def run(
        self,
        request: BuildRequest,
        *,
        checkpoint: BuildCheckpoint | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> BuildResult:
        bot_id = request.bot_id or generate_bot_id(request.project.client_name, request.project.project_name)
        validate_bot_id(bot_id)
        if checkpoint is not None:
            checkpoint.consume(bot_id)

        session_id = (checkpoint.session_id if checkpoint else None) or request.session_id or str(uuid.uuid4())
        state = _BuildState(request=request, result=BuildResult(bot_id=bot_id, session_id=session_id))
        log = logger.bind(bot_id=bot_id, session_id=session_id)
        log.info("build.started", resumed=checkpoint is not None)

        try:
            await self._execute(state, checkpoint, progress, cancel)
        except PublishFailure as exc:
            self._fail(state, str(exc), progress)
            state.result.failed_rows = exc.failed_rows
        except BuilderError as exc:
            self._fail(state, str(exc), progress)
        log.info(
            "build.finished",
            success=state.result.success,
            cancelled=state.result.cancelled,
            warnings=len(state.result.warnings),
            timings_ms=state.result.timings_ms,
        )
        return state.result

    async def _execute(
        self,
        state: _BuildState,
        checkpoint: BuildCheckpoint | None,
        progress: ProgressCallback | None,
        cancel: CancellationToken | None,
    ) -> None:
        request, result = state.request, state.result
        environment = request.environment or self._tuning.default_environment

        if checkpoint is not None:
            state.graph = checkpoint.graph.copy()
            state.refined = checkpoint.refined
            state.custom_scripts = {script.name: script for script in checkpoint.custom_scripts}
            _emit(progress, BuildStep.generate, "Resumed from checkpoint", details=f"refined={checkpoint.refined}")
        else:
            if self._stop_if_cancelled(state, cancel, progress):
                return
            _emit(progress, BuildStep.generate, "Generating flow graph")
            with _step(result, BuildStep.generate):
                generation = await bounded(
                    self._oracle.generate(request.instruction, request.project, session_id=result.session_id),
                    self._tuning.generate_timeout_s,
                    "oracle.generate",
                )
            state.graph = generation.graph
            state.custom_scripts = {script.name: script for script in generation.custom_scripts}
            if generation.warnings:
                logger.info("build.generation_warnings", warnings=generation.warnings)

        if not state.refined:
            if self._stop_if_cancelled(state, cancel, progress):
                return
            _emit(progress, BuildStep.refine, "Validating flow graph")
            with _step(result, BuildStep.refine):
                outcome = await self._refinement.run(
                    state.graph,
                    instruction=request.instruction,
                    project=request.project,
                    target_id=result.bot_id,
                    credentials=request.credentials,
                    on_progress=_refinement_reporter(progress),
                    session_id=result.session_id,
                )
            self._absorb_refinement(state, outcome)
            if not outcome.accepted and not self._tuning.publish_with_residual_defects:
                raise BuilderError(
                    f"Validation failed after {outcome.iterations} attempts with {len(outcome.defects)} outstanding defects"
                )
            state.refined = True

        graph = state.graph
        result.graph = graph
        result.node_count = graph.node_count

        if self._stop_if_cancelled(state, cancel, progress):
            return
        _emit(progress, BuildStep.resolve_dependencies, "Resolving script dependencies")
        with _step(result, BuildStep.resolve_dependencies):
            resolution = await self._resolve(graph, state.custom_scripts.values())
        result.scripts = resolution.scripts
        result.dependency_count = resolution.resolved_count
        result.unresolved_scripts = resolution.unresolved
        if resolution.unresolved:
            result.warnings.append(f"Unresolved script dependencies: {', '.join(resolution.unresolved)}")

        if self._stop_if_cancelled(state, cancel, progress):
            return
        _emit(progress, BuildStep.publish, f"Publishing to {environment}")
        with _step(result, BuildStep.publish):
            receipt = await bounded(
                self._publisher.publish(graph, resolution.scripts, result.bot_id, environment, request.credentials),
                self._tuning.publish_timeout_s,
                "publisher.publish",
            )
        result.version_id = receipt.version_id or result.version_id
        result.success = True

        if cancel is not None and cancel.cancelled:
            result.cancelled = True
            result.warnings.append("Build cancelled after publish; preview and export were skipped")
            _emit(progress, BuildStep.cancelled, "Cancelled after publish")
            return

        _emit(progress, BuildStep.provision_preview, "Provisioning preview and exporting graph")
        await asyncio.gather(
            self._provision(state, environment),
            self._export(state),
        )
        _emit(progress, BuildStep.done, "Build complete", details=result.version_id)

    def _absorb_refinement(self, state: _BuildState, outcome: RefinementOutcome) -> None:
        result = state.result
        state.graph = outcome.graph
        result.iterations = outcome.iterations
        result.fixes_applied.extend(outcome.fixes_applied)
        result.version_id = outcome.version_id
        for script in outcome.custom_scripts:
            state.custom_scripts[script.name] = script
        if outcome.accepted:
            return
        result.residual_defects = list(outcome.defects)
        sample = "; ".join(defect.describe() for defect in outcome.defects[: self._tuning.sample_defect_messages])
        result.warnings.append(
            f"Validation did not converge after {outcome.iterations} attempts; "
            f"{len(outcome.defects)} residual defects ({sample})"
        )

    async def _resolve(self, graph: FlowGraph, provided: Iterable[ScriptDescriptor]) -> DependencyResolution:
        try:
            return await bounded(
                self._resolver.resolve(graph, provided),
                self._tuning.registry_timeout_s,
                "dependencies.resolve",
            )
        except Exception as exc:
            _log_degraded("build.dependencies_failed", exc)
            return DependencyResolution(unresolved=sorted(graph.behavior_usage()), remote_error=str(exc))

    async def _provision(self, state: _BuildState, environment: str) -> None:
        result, request = state.result, state.request
        with _step(result, BuildStep.provision_preview):
            try:
                channel = await bounded(
                    self._preview.provision(result.bot_id, environment, request.credentials, request.project.branding),
                    self._tuning.preview_timeout_s,
                    "preview.provision",
                )
            except Exception as exc:
                _log_degraded("build.preview_failed", exc, bot_id=result.bot_id)
                result.warnings.append(f"Preview provisioning failed: {exc}")
                return
        result.preview_url = channel.preview_url
        result.preview_id = channel.preview_id

    async def _export(self, state: _BuildState) -> None:
        result, request = state.result, state.request
        title = f"{request.project.client_name} - {request.project.project_name}"
        with _step(result, BuildStep.export):
            try:
                receipt = await bounded(
                    self._exporter.export(state.graph, title, request.owner_id),
                    self._tuning.export_timeout_s,
                    "exporter.export",
                )
            except Exception as exc:
                _log_degraded("build.export_failed", exc, bot_id=result.bot_id)
                result.warnings.append(f"Export failed: {exc}")
                return
        result.export_url = receipt.document_url
        result.export_id = receipt.document_id

    def _stop_if_cancelled(
        self, state: _BuildState, cancel: CancellationToken | None, progress: ProgressCallback | None
    ) -> bool:
        if cancel is None or not cancel.cancelled:
            return False
        result = state.result
        result.cancelled = True
        result.error = cancel.reason or "Build cancelled"
        result.checkpoint = state.checkpoint()
        logger.info("build.cancelled", bot_id=result.bot_id, checkpoint=result.checkpoint is not None)
        _emit(progress, BuildStep.cancelled, result.error)
        return True

    def _fail(self, state: _BuildState, message: str, progress: ProgressCallback | None) -> None:
        result = state.result
        result.success = False
        result.error = message
        result.checkpoint = state.checkpoint()
        if state.graph is not None:
            result.graph = state.graph
            result.node_count = state.graph.node_count
        logger.error("build.failed", bot_id=result.bot_id, error=message, checkpoint=result.checkpoint is not None)
        _emit(progress, BuildStep.failed, message)


@contextlib.contextmanager
def _step(result: BuildResult, step: BuildStep) -> Iterator[None]:
    started = time.perf_counter()
    with tracer.start_as_current_span(f"build.{step.value}") as span:
        span.set_attribute("bot.id", result.bot_id)
        try:
            yield
        finally:
            result.timings_ms[step.value] = int((time.perf_counter() - started) * 1000)


def _emit(progress: ProgressCallback | None, step: BuildStep, message: str, details: str | None = None) -> None:
    if progress is None:
        return
    try:
        progress(ProgressUpdate(step=step, message=message, progress=_STEP_PROGRESS.get(step, 0), details=details))
    except Exception:
        logger.exception("build.progress_callback_failed", step=step.value)


def _log_degraded(event: str, exc: Exception, **context: object) -> None:
    """Best-effort steps: expected adapter failures are warnings, anything else keeps its traceback."""
    if isinstance(exc, BuilderError):
        logger.warning(event, error=str(exc), **context)
    else:
        logger.exception(event, **context)


def _refinement_reporter(progress: ProgressCallback | None):
    if progress is None:
        return None

    def report(iteration: int, defect_count: int, samples: list[str]) -> None:
        message = f"Validation {iteration}: {defect_count} defects" if defect_count else f"Validation {iteration}: passed"
        _emit(progress, BuildStep.refine, message, details="; ".join(samples) or None)

    return report


__all__ = [
    "BuildCheckpoint",
    "BuildRequest",
    "BuildResult",
    "CancellationToken",
    "DeploymentOrchestrator",
    "generate_bot_id",
    "validate_bot_id",
]
