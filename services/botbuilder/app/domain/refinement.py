"""Bounded validate-and-repair loop around the generation oracle."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

import structlog

from ..config import PipelineTuning
from .errors import AdapterError, AuthenticationError
from .flow_graph import FlowGraph
from .http import bounded
from .oracle import GenerationResult
from .system_nodes import ensure_system_nodes, rewrite_dangling_targets, structural_check
from .types import Credentials, ProjectConfig, ScriptDescriptor, ValidationDefect
from .validator import Verdict

logger = structlog.get_logger(__name__)

RefinementProgress = Callable[[int, int, list[str]], None]

REPAIR_DRIFT_RATIO = 0.05
REPAIR_DRIFT_NODES = 3


class Oracle(Protocol):
    async def generate(
        self,
        instruction: str,
        project: ProjectConfig,
        *,
        prior_defects: Sequence[ValidationDefect] | None = None,
        graph: FlowGraph | None = None,
        known_issues: Sequence[str] | None = None,
        session_id: str | None = None,
    ) -> GenerationResult: ...


class Validator(Protocol):
    async def validate(self, graph: FlowGraph, target_id: str, credentials: Credentials) -> Verdict: ...


class DefectRecorder(Protocol):
    async def record(self, defects: Sequence[ValidationDefect]) -> None: ...

    async def recall(self, defects: Sequence[ValidationDefect]) -> list[str]: ...


class RefinementState(str, enum.Enum):
    generated = "Generated"
    validating = "Validating"
    repairing = "Repairing"
    accepted = "Accepted"
    exhausted_retries = "ExhaustedRetries"


@dataclass
class IterationRecord:
    iteration: int
    defect_count: int
    fixes: list[str]
    duration_ms: int


@dataclass
class RefinementOutcome:
    state: RefinementState
    graph: FlowGraph
    iterations: int
    defects: list[ValidationDefect] = field(default_factory=list)
    fixes_applied: list[str] = field(default_factory=list)
    custom_scripts: list[ScriptDescriptor] = field(default_factory=list)
    history: list[IterationRecord] = field(default_factory=list)
    version_id: str | None = None

    @property
    def accepted(self) -> bool:
        return self.state is RefinementState.accepted


def repair_drifted(before: FlowGraph, after: FlowGraph) -> bool:
    """True when a repair changes the node count by more than 5% and by more than 3 nodes."""
    diff = abs(after.node_count - before.node_count)
    return diff > REPAIR_DRIFT_NODES and diff > REPAIR_DRIFT_RATIO * max(before.node_count, 1)


def merge_defects(*groups: Sequence[ValidationDefect]) -> list[ValidationDefect]:
    merged: list[ValidationDefect] = []
    seen: set[tuple[int | None, str, str]] = set()
    for group in groups:
        for defect in group:
            key = (defect.node_id, defect.field, defect.message)
            if key not in seen:
                seen.add(key)
                merged.append(defect)
    return merged


class RefinementLoop:
    """Drive ``Generated -> Validating -> (Accepted | Repairing) -> ...``.

    ``max_iterations`` bounds the number of validations; a repair happens
    between two validations, so at most ``max_iterations - 1`` repairs are
    requested. A repaired graph identical to the rejected one is not special
    cased: it simply consumes an iteration. A repair call that fails, or whose
    node count drifts too far from the graph it was asked to fix, also consumes
    an iteration and the previous graph is validated again.
    """

    def __init__(
        self,
        oracle: Oracle,
        validator: Validator,
        *,
        max_iterations: int = 5,
        validator_transport_retries: int = 1,
        validate_timeout_s: float = 60.0,
        repair_timeout_s: float = 180.0,
        inject_system_nodes: bool = True,
        rewrite_dangling: bool = False,
        sample_size: int = 2,
        recorder: DefectRecorder | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._oracle = oracle
        self._validator = validator
        self._max_iterations = max_iterations
        self._transport_retries = validator_transport_retries
        self._validate_timeout_s = validate_timeout_s
        self._repair_timeout_s = repair_timeout_s
        self._inject_system_nodes = inject_system_nodes
        self._rewrite_dangling = rewrite_dangling
        self._sample_size = sample_size
        self._recorder = recorder

    @classmethod
    def from_tuning(
        cls,
        oracle: Oracle,
        validator: Validator,
        tuning: PipelineTuning,
        recorder: DefectRecorder | None = None,
    ) -> "RefinementLoop":
        return cls(
            oracle,
            validator,
            max_iterations=tuning.max_refinement_iterations,
            validator_transport_retries=tuning.validator_transport_retries,
            validate_timeout_s=tuning.validate_timeout_s,
            repair_timeout_s=tuning.repair_timeout_s,
            inject_system_nodes=tuning.inject_system_nodes,
            rewrite_dangling=tuning.rewrite_dangling_targets,
            sample_size=tuning.sample_defect_messages,
            recorder=recorder,
        )

    async def run(
        self,
        graph: FlowGraph,
        *,
        instruction: str,
        project: ProjectConfig,
        target_id: str,
        credentials: Credentials,
        on_progress: RefinementProgress | None = None,
        session_id: str | None = None,
    ) -> RefinementOutcome:
        state = RefinementState.generated
        current = graph.copy()
        outstanding: list[ValidationDefect] = []
        all_fixes: list[str] = []
        scripts: dict[str, ScriptDescriptor] = {}
        history: list[IterationRecord] = []
        iteration = 0

        while iteration < self._max_iterations:
            iteration += 1
            started = time.perf_counter()
            fixes = self._prepass(current)
            all_fixes.extend(fixes)

            state = RefinementState.validating
            structural = structural_check(current)
            if structural:
                logger.info("refinement.structural_defects", iteration=iteration, count=len(structural))
            verdict = await self._validate(current, target_id, credentials)
            outstanding = merge_defects(structural, verdict.defects)
            self._report(on_progress, iteration, outstanding)
            await self._record(verdict.defects)
            history.append(
                IterationRecord(
                    iteration=iteration,
                    defect_count=len(outstanding),
                    fixes=fixes,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            )

            if verdict.accepted and not structural:
                logger.info("refinement.accepted", iteration=iteration, target_id=target_id)
                return RefinementOutcome(
                    state=RefinementState.accepted,
                    graph=current,
                    iterations=iteration,
                    fixes_applied=all_fixes,
                    custom_scripts=list(scripts.values()),
                    history=history,
                    version_id=verdict.version_id,
                )
            if iteration >= self._max_iterations:
                break

            state = RefinementState.repairing
            logger.info("refinement.repairing", iteration=iteration, defects=len(outstanding), state=state.value)
            known_issues = await self._recall(outstanding)
            try:
                repaired = await bounded(
                    self._oracle.generate(
                        instruction,
                        project,
                        prior_defects=outstanding,
                        graph=current,
                        known_issues=known_issues or None,
                        session_id=session_id,
                    ),
                    self._repair_timeout_s,
                    "oracle.repair",
                )
            except AuthenticationError:
                raise
            except AdapterError as exc:
                # The failed attempt still counts against the budget; the current graph is revalidated.
                logger.warning("refinement.repair_failed", iteration=iteration, error=str(exc))
                self._report(on_progress, iteration, outstanding, note=f"Repair failed: {exc}")
                continue
            if repair_drifted(current, repaired.graph):
                logger.warning(
                    "refinement.repair_rejected",
                    iteration=iteration,
                    before=current.node_count,
                    after=repaired.graph.node_count,
                )
                self._report(
                    on_progress,
                    iteration,
                    outstanding,
                    note=f"Repair rejected: node count changed from {current.node_count} to {repaired.graph.node_count}",
                )
                continue
            for script in repaired.custom_scripts:
                scripts[script.name] = script
            current = repaired.graph

        logger.warning(
            "refinement.exhausted",
            iterations=iteration,
            outstanding=len(outstanding),
            target_id=target_id,
        )
        return RefinementOutcome(
            state=RefinementState.exhausted_retries,
            graph=current,
            iterations=iteration,
            defects=outstanding,
            fixes_applied=all_fixes,
            custom_scripts=list(scripts.values()),
            history=history,
        )

    def _prepass(self, graph: FlowGraph) -> list[str]:
        fixes: list[str] = []
        if self._inject_system_nodes:
            fixes.extend(ensure_system_nodes(graph))
        if self._rewrite_dangling:
            fixes.extend(rewrite_dangling_targets(graph))
        return fixes

    async def _validate(self, graph: FlowGraph, target_id: str, credentials: Credentials) -> Verdict:
        attempt = 0
        while True:
            try:
                return await bounded(
                    self._validator.validate(graph, target_id, credentials),
                    self._validate_timeout_s,
                    "validator.validate",
                )
            except AuthenticationError:
                raise
            except AdapterError as exc:
                if attempt >= self._transport_retries:
                    raise
                attempt += 1
                logger.warning("refinement.validator_retry", attempt=attempt, error=str(exc))

    def _report(
        self,
        on_progress: RefinementProgress | None,
        iteration: int,
        defects: list[ValidationDefect],
        note: str | None = None,
    ) -> None:
        if on_progress is None:
            return
        sample = [note] if note else [defect.describe() for defect in defects[: self._sample_size]]
        try:
            on_progress(iteration, len(defects), sample)
        except Exception:
            logger.exception("refinement.progress_callback_failed", iteration=iteration)

    async def _record(self, defects: Sequence[ValidationDefect]) -> None:
        if self._recorder is None or not defects:
            return
        try:
            await self._recorder.record(defects)
        except Exception:
            logger.exception("refinement.defect_record_failed", defects=len(defects))

    async def _recall(self, defects: Sequence[ValidationDefect]) -> list[str]:
        if self._recorder is None or not defects:
            return []
        try:
            return list(await self._recorder.recall(defects))
        except Exception:
            logger.exception("refinement.defect_recall_failed", defects=len(defects))
            return []


__all__ = [
    "DefectRecorder",
    "RefinementLoop",
    "RefinementOutcome",
    "RefinementProgress",
    "RefinementState",
    "merge_defects",
    "repair_drifted",
]
