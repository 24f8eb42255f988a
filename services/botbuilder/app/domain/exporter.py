"""Mirror of the final graph into a reviewable spreadsheet."""
from __future__ import annotations

from dataclasses import dataclass

import httpx

from ..config import BuilderSettings, get_settings
from .errors import AdapterError
from .flow_graph import FlowGraph
from .http import post_json


@dataclass
class ExportReceipt:
    document_url: str
    document_id: str | None = None


class SheetExporter:
    def __init__(self, settings: BuilderSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def export(self, graph: FlowGraph, title: str, owner_id: str) -> ExportReceipt:
        data = await post_json(
            self._client,
            self._settings.integrations.exporter_url,
            {"graph": graph.serialize(), "title": title, "ownerId": owner_id},
            operation="exporter.export",
            timeout=self._settings.tuning.export_timeout_s,
        )
        if not data.get("success") or not data.get("documentUrl"):
            raise AdapterError("exporter.export", str(data.get("error") or "no document URL returned"))
        return ExportReceipt(document_url=data["documentUrl"], document_id=data.get("documentId"))


__all__ = ["ExportReceipt", "SheetExporter"]
