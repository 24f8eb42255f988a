"""Script dependency resolution for a flow graph."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import structlog

from .errors import AdapterError
from .flow_graph import FlowGraph
from .script_registry import BundledScriptRegistry, RemoteScriptRegistry
from .types import ScriptDescriptor

logger = structlog.get_logger(__name__)


@dataclass
class DependencyResolution:
    scripts: list[ScriptDescriptor] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    remote_error: str | None = None

    @property
    def resolved_count(self) -> int:
        return len(self.scripts)


class ScriptDependencyResolver:
    """Resolve every custom behavior a graph references.

    Lookup order per name: bundled registry, scripts the oracle authored for
    this build, then one batched remote query. Names found nowhere are
    returned as unresolved; the resolver never raises for them.
    """

    def __init__(self, bundled: BundledScriptRegistry, remote: RemoteScriptRegistry | None = None) -> None:
        self._bundled = bundled
        self._remote = remote

    async def resolve(self, graph: FlowGraph, provided: Iterable[ScriptDescriptor] = ()) -> DependencyResolution:
        usage = graph.behavior_usage()
        provided_by_name = {script.name: script for script in provided if script.content}
        resolution = DependencyResolution()
        pending: list[str] = []

        for name in sorted(usage):
            bundled = self._bundled.get(name)
            if bundled is not None:
                resolution.scripts.append(_descriptor(bundled, usage[name], "bundled"))
            elif name in provided_by_name:
                resolution.scripts.append(_descriptor(provided_by_name[name], usage[name], "generated"))
            else:
                pending.append(name)

        if pending and self._remote is not None:
            try:
                lookup = await self._remote.fetch(pending)
            except AdapterError as exc:
                logger.warning("dependencies.remote_failed", names=pending, error=str(exc))
                resolution.remote_error = str(exc)
            else:
                for name in pending:
                    content = lookup.found.get(name)
                    if content:
                        resolution.scripts.append(
                            ScriptDescriptor(name=name, content=content, used_by_node_ids=usage[name], source="remote")
                        )
                pending = [name for name in pending if name not in lookup.found]

        resolution.unresolved = pending
        logger.info(
            "dependencies.resolved",
            resolved=[script.name for script in resolution.scripts],
            unresolved=resolution.unresolved,
        )
        return resolution


def _descriptor(script: ScriptDescriptor, node_ids: list[int], source: str) -> ScriptDescriptor:
    return ScriptDescriptor(
        name=script.name,
        content=script.content,
        is_critical=script.is_critical,
        used_by_node_ids=list(node_ids),
        description=script.description,
        source=source,
    )


__all__ = ["DependencyResolution", "ScriptDependencyResolver"]
