"""Adapter for the external flow compiler/validator."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from ..config import BuilderSettings, get_settings
from .errors import AdapterError
from .flow_graph import FlowGraph
from .http import post_json
from .types import Credentials, ValidationDefect

logger = structlog.get_logger(__name__)


@dataclass
class Verdict:
    accepted: bool
    defects: list[ValidationDefect] = field(default_factory=list)
    version_id: str | None = None

    @classmethod
    def accept(cls, version_id: str | None = None) -> "Verdict":
        return cls(accepted=True, version_id=version_id)

    @classmethod
    def reject(cls, defects: list[ValidationDefect]) -> "Verdict":
        return cls(accepted=False, defects=list(defects))


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_defects(raw: Any) -> list[ValidationDefect]:
    """Normalise the compiler's defect shapes into ``ValidationDefect`` records.

    Accepts ``{nodeId, field, message}``, the native
    ``{node_num, row_num, err_msgs: [{field_name, error_description}]}`` and
    the legacy ``[node_num, [[category, field, message], ...]]`` tuples. Plain
    strings become graph-level defects.
    """
    if not isinstance(raw, list):
        return []
    defects: list[ValidationDefect] = []
    for entry in raw:
        if isinstance(entry, str):
            defects.append(ValidationDefect(None, "", entry))
        elif isinstance(entry, dict):
            node_id = _as_int(entry.get("nodeId", entry.get("node_num", entry.get("nodeNum"))))
            messages = entry.get("err_msgs")
            if isinstance(messages, list) and messages:
                for msg in messages:
                    if not isinstance(msg, dict):
                        defects.append(ValidationDefect(node_id, "", str(msg)))
                        continue
                    description = msg.get("error_description") or msg.get("message") or json.dumps(msg)
                    entry_value = msg.get("field_entry")
                    if entry_value:
                        description = f'{description} (value: "{str(entry_value)[:50]}")'
                    defects.append(ValidationDefect(node_id, msg.get("field_name") or "", description))
            else:
                message = entry.get("message") or entry.get("error_description") or json.dumps(entry)
                defects.append(ValidationDefect(node_id, entry.get("field") or entry.get("field_name") or "", message))
        elif isinstance(entry, list) and len(entry) == 2:
            node_id = _as_int(entry[0])
            details = entry[1] if isinstance(entry[1], list) else [entry[1]]
            for detail in details:
                if isinstance(detail, list) and len(detail) >= 3:
                    defects.append(ValidationDefect(node_id, str(detail[1] or ""), str(detail[2])))
                else:
                    defects.append(ValidationDefect(node_id, "", str(detail)))
        else:
            defects.append(ValidationDefect(None, "", json.dumps(entry)))
    return defects


class ValidatorAdapter:
    """Single, retry-free submission of a graph to the compiler."""

    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def validate(self, graph: FlowGraph, target_id: str, credentials: Credentials) -> Verdict:
        url = self._settings.integrations.bot_manager_url.rstrip("/") + "/validate"
        data = await post_json(
            self._client,
            url,
            {"graph": graph.serialize(), "targetId": target_id, "credentials": {"token": credentials.token}},
            operation="validator.validate",
            timeout=self._settings.tuning.validate_timeout_s,
            accept_error_body=True,
        )
        valid = data.get("valid")
        if not isinstance(valid, bool):
            raise AdapterError("validator.validate", "response missing boolean 'valid'")
        if valid:
            return Verdict.accept(data.get("versionId"))

        defects = parse_defects(data.get("defects", data.get("errors")))
        if not defects:
            raise AdapterError("validator.validate", "rejection carried no defects")
        logger.info("validator.rejected", target_id=target_id, defects=len(defects))
        return Verdict.reject(defects)


__all__ = ["ValidatorAdapter", "Verdict", "parse_defects"]
