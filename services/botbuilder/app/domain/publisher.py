"""Publishing of a final graph and its scripts to the hosting system."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import httpx
import structlog

from ..config import BuilderSettings, get_settings
from .errors import PublishFailure
from .flow_graph import FlowGraph
from .http import post_json
from .types import Credentials, FailedRow, ScriptDescriptor, ValidationDefect
from .validator import parse_defects

logger = structlog.get_logger(__name__)


@dataclass
class PublishReceipt:
    version_id: str | None
    preview_url: str | None = None


def extract_failed_rows(defects: Sequence[ValidationDefect], graph: FlowGraph, max_chars: int = 500) -> list[FailedRow]:
    """Group publish defects per node and attach the offending CSV row."""
    rows: dict[int, FailedRow] = {}
    for defect in defects:
        node_id = defect.node_id if defect.node_id is not None else -1
        row = rows.get(node_id)
        if row is None:
            node = graph.find_node(node_id) if defect.node_id is not None else None
            row = FailedRow(
                node_id=node_id,
                node_name=node.display_name if node else "",
                node_kind=node.kind.value if node else "",
                raw_row=graph.row_text(node_id)[:max_chars] if node else "",
            )
            rows[node_id] = row
        if defect.field and defect.field not in row.fields:
            row.fields.append(defect.field)
        row.errors.append(f"[{defect.field}] {defect.message}" if defect.field else defect.message)
    return list(rows.values())


def _failure_message(data: dict[str, Any]) -> str:
    deploy = data.get("deployResult") or {}
    error = deploy.get("error") if isinstance(deploy, dict) else None
    if isinstance(error, dict):
        messages = error.get("messages")
        if isinstance(messages, list) and messages:
            return str(messages[0])
        if error.get("errors"):
            return str(error["errors"])
    return str(data.get("message") or data.get("error") or "Deployment failed")


class Publisher:
    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def publish(
        self,
        graph: FlowGraph,
        scripts: Sequence[ScriptDescriptor],
        target_id: str,
        environment: str,
        credentials: Credentials,
    ) -> PublishReceipt:
        url = self._settings.integrations.bot_manager_url.rstrip("/") + "/upload"
        data = await post_json(
            self._client,
            url,
            {
                "graph": graph.serialize(),
                "scripts": [script.as_upload() for script in scripts],
                "targetId": target_id,
                "environment": environment,
                "credentials": {"token": credentials.token},
            },
            operation="publisher.publish",
            timeout=self._settings.tuning.publish_timeout_s,
            accept_error_body=True,
        )
        # The hosting API reports success=true for a compiled-but-not-deployed version.
        if not data.get("success") or data.get("deployed") is False:
            defects = parse_defects(data.get("errors"))
            failed_rows = extract_failed_rows(defects, graph, self._settings.tuning.failed_row_max_chars)
            message = _failure_message(data)
            logger.warning("publisher.rejected", target_id=target_id, message=message, failed_nodes=len(failed_rows))
            raise PublishFailure(message, failed_rows, raw=data)

        logger.info("publisher.published", target_id=target_id, environment=environment, version_id=data.get("versionId"))
        return PublishReceipt(version_id=data.get("versionId"), preview_url=data.get("previewUrl"))


__all__ = ["PublishReceipt", "Publisher", "extract_failed_rows"]
