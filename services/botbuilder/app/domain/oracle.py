"""Client for the flow generation oracle."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Sequence

import httpx
import structlog

from ..config import BuilderSettings, get_settings
from .errors import AdapterError, FlowGraphParseError
from .flow_graph import FlowGraph
from .http import post_json
from .types import ProjectConfig, ScriptDescriptor, ValidationDefect

logger = structlog.get_logger(__name__)


@dataclass
class GenerationResult:
    graph: FlowGraph
    node_count: int
    custom_scripts: list[ScriptDescriptor] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class GenerationOracle:
    """Wrapper around the generation endpoint, used for first drafts and repairs."""

    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def generate(
        self,
        instruction: str,
        project: ProjectConfig,
        *,
        prior_defects: Sequence[ValidationDefect] | None = None,
        graph: FlowGraph | None = None,
        known_issues: Sequence[str] | None = None,
        session_id: str | None = None,
    ) -> GenerationResult:
        integrations = self._settings.integrations
        if not integrations.oracle_api_key:
            raise AdapterError("oracle.generate", "oracle API key is not configured")
        repairing = prior_defects is not None
        payload: dict = {
            "instruction": instruction,
            "projectContext": project.as_context(),
            "sessionId": session_id or str(uuid.uuid4()),
        }
        if repairing:
            payload["priorDefects"] = [defect.as_dict() for defect in prior_defects]
        if graph is not None:
            payload["graph"] = graph.serialize()
        if known_issues:
            payload["knownIssues"] = list(known_issues)

        tuning = self._settings.tuning
        data = await post_json(
            self._client,
            integrations.oracle_url,
            payload,
            operation="oracle.repair" if repairing else "oracle.generate",
            headers={"x-api-key": integrations.oracle_api_key},
            timeout=tuning.repair_timeout_s if repairing else tuning.generate_timeout_s,
        )

        text = data.get("graph")
        if not text or not isinstance(text, str):
            raise AdapterError("oracle.generate", "response missing graph payload")
        try:
            parsed = FlowGraph.parse(text)
        except FlowGraphParseError as exc:
            raise AdapterError("oracle.generate", f"unreadable graph: {exc}") from exc

        scripts = [
            ScriptDescriptor(name=entry["name"], content=entry.get("content", ""), source="generated")
            for entry in data.get("customScripts") or []
            if isinstance(entry, dict) and entry.get("name")
        ]
        reported = data.get("nodeCount")
        if isinstance(reported, int) and reported != parsed.node_count:
            logger.info("oracle.node_count_mismatch", reported=reported, parsed=parsed.node_count)
        return GenerationResult(
            graph=parsed,
            node_count=parsed.node_count,
            custom_scripts=scripts,
            warnings=[str(w) for w in data.get("warnings") or []],
        )


__all__ = ["GenerationOracle", "GenerationResult"]
