"""Flow graph model and its canonical 26-column CSV serialization."""
from __future__ import annotations

import copy
import csv
import enum
import io
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

import structlog

from .errors import DuplicateNodeError, FlowGraphParseError
from .routing import LABEL_SEPARATOR, Edge, is_malformed, parse_buttons, parse_next_nodes, parse_routing
from .types import ValidationDefect

logger = structlog.get_logger(__name__)

COLUMNS: tuple[str, ...] = (
    "Node Number",
    "Node Type",
    "Node Name",
    "Intent",
    "Entity Type",
    "Entity",
    "NLU Disabled?",
    "Next Nodes",
    "Message",
    "Rich Asset Type",
    "Rich Asset Content",
    "Answer Required?",
    "Behaviors",
    "Command",
    "Description",
    "Output",
    "Node Input",
    "Parameter Input",
    "Decision Variable",
    "What Next?",
    "Node Tags",
    "Skill Tag",
    "Variable",
    "Platform Flag",
    "Flows",
    "CSS Classname",
)

# Columns promoted to first-class Node attributes; the rest live in Node.columns.
_MODELLED = {
    "Node Number",
    "Node Type",
    "Node Name",
    "Next Nodes",
    "Message",
    "Rich Asset Type",
    "Rich Asset Content",
    "Command",
    "What Next?",
}
EXTRA_COLUMNS: tuple[str, ...] = tuple(c for c in COLUMNS if c not in _MODELLED)

SYSTEM_BEHAVIORS = frozenset(
    {
        "SysAssignVariable",
        "SysMultiMatchRouting",
        "SysSetEnv",
        "SysShowMetadata",
        "SysVariableReset",
        "SysSendEmail",
        "SysHttpRequest",
    }
)


class NodeKind(enum.Enum):
    decision = "D"
    action = "A"


@dataclass
class RichPresentation:
    kind: str
    content: str

    def button_targets(self) -> list[int]:
        """Node ids reachable from the asset: pipe-format buttons or JSON ``options[].dest``."""
        content = self.content.strip()
        if content.startswith("{"):
            try:
                options = json.loads(content).get("options")
            except (ValueError, AttributeError):
                return []
            targets: list[int] = []
            for option in options if isinstance(options, list) else []:
                try:
                    targets.append(int(str(option["dest"]).strip()))
                except (KeyError, TypeError, ValueError):
                    continue
            return targets
        if LABEL_SEPARATOR not in content:
            return []
        return [edge.target for edge in parse_buttons(content)]


@dataclass
class Node:
    id: int
    kind: NodeKind
    display_name: str = ""
    behavior_name: str | None = None
    content: str = ""
    rich_presentation: RichPresentation | None = None
    routing: str = ""
    next_nodes: str = ""
    columns: dict[str, str] = field(default_factory=dict)

    @property
    def edges(self) -> list[Edge]:
        return parse_routing(self.routing)

    @property
    def is_action(self) -> bool:
        return self.kind is NodeKind.action

    def to_row(self) -> list[str]:
        rich = self.rich_presentation
        values = {
            "Node Number": str(self.id),
            "Node Type": self.kind.value,
            "Node Name": self.display_name,
            "Next Nodes": self.next_nodes,
            "Message": self.content,
            "Rich Asset Type": rich.kind if rich else "",
            "Rich Asset Content": rich.content if rich else "",
            "Command": self.behavior_name or "",
            "What Next?": self.routing,
        }
        return [values.get(column, self.columns.get(column, "")) for column in COLUMNS]

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "Node":
        """Build a node from a column-name mapping; raises ValueError on a bad id or type."""
        node_id = int(values.get("Node Number", "").strip())
        kind = NodeKind(values.get("Node Type", "").strip().upper())
        rich_kind = values.get("Rich Asset Type", "")
        rich_content = values.get("Rich Asset Content", "")
        rich = RichPresentation(rich_kind, rich_content) if (rich_kind or rich_content) else None
        return cls(
            id=node_id,
            kind=kind,
            display_name=values.get("Node Name", ""),
            behavior_name=values.get("Command") or None,
            content=values.get("Message", ""),
            rich_presentation=rich,
            routing=values.get("What Next?", ""),
            next_nodes=values.get("Next Nodes", ""),
            columns={column: values.get(column, "") for column in EXTRA_COLUMNS if values.get(column)},
        )


class FlowGraph:
    """Ordered collection of nodes plus free-form metadata."""

    def __init__(self, nodes: Iterable[Node] = (), metadata: dict[str, Any] | None = None) -> None:
        self._nodes: list[Node] = list(nodes)
        self.metadata: dict[str, Any] = dict(metadata or {})

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    def node_ids(self) -> set[int]:
        return {node.id for node in self._nodes}

    def copy(self) -> "FlowGraph":
        return FlowGraph(copy.deepcopy(self._nodes), copy.deepcopy(self.metadata))

    # -- serialization -------------------------------------------------

    @classmethod
    def parse(cls, text: str) -> "FlowGraph":
        reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
        try:
            header = [name.strip() for name in next(reader)]
        except StopIteration:
            raise FlowGraphParseError("Flow graph is empty: missing header row") from None
        missing = [column for column in COLUMNS if column not in header]
        if missing:
            raise FlowGraphParseError(f"Flow graph header is missing columns: {missing}")
        positions = {name: idx for idx, name in enumerate(header)}

        nodes: list[Node] = []
        skipped: list[dict[str, Any]] = []
        for row_num, row in enumerate(reader, start=1):
            if not any(cell.strip() for cell in row):
                continue
            values = {column: row[positions[column]] if positions[column] < len(row) else "" for column in COLUMNS}
            try:
                nodes.append(Node.from_values(values))
            except ValueError as exc:
                skipped.append({"row": row_num, "reason": str(exc), "nodeNumber": values["Node Number"][:50]})
        metadata: dict[str, Any] = {}
        if skipped:
            logger.warning("flow_graph.rows_skipped", count=len(skipped))
            metadata["skipped_rows"] = skipped
        return cls(nodes, metadata)

    def serialize(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(COLUMNS)
        for node in self._nodes:
            writer.writerow(node.to_row())
        return buffer.getvalue()

    def row_text(self, node_id: int) -> str:
        node = self.find_node(node_id)
        if node is None:
            return ""
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="").writerow(node.to_row())
        return buffer.getvalue()

    # -- queries -------------------------------------------------------

    def find_node(self, node_id: int) -> Node | None:
        for node in self._nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_targets(self, node: Node) -> list[int]:
        targets = [edge.target for edge in node.edges]
        targets.extend(parse_next_nodes(node.next_nodes) or [])
        return targets

    def referenced_behaviors(self) -> set[str]:
        return set(self.behavior_usage())

    def behavior_usage(self) -> dict[str, list[int]]:
        usage: dict[str, list[int]] = {}
        for node in self._nodes:
            name = (node.behavior_name or "").strip()
            if not node.is_action or not name or name in SYSTEM_BEHAVIORS:
                continue
            usage.setdefault(name, []).append(node.id)
        return usage

    def dangling_references(self) -> list[tuple[int, str, int]]:
        known = self.node_ids()
        dangling: list[tuple[int, str, int]] = []
        for node in self._nodes:
            for edge in node.edges:
                if edge.target not in known:
                    dangling.append((node.id, "What Next?", edge.target))
            for target in parse_next_nodes(node.next_nodes) or []:
                if target not in known:
                    dangling.append((node.id, "Next Nodes", target))
            if node.rich_presentation is not None:
                for target in node.rich_presentation.button_targets():
                    if target not in known:
                        dangling.append((node.id, "Rich Asset Content", target))
        return dangling

    def structural_defects(self, required_ids: Iterable[int] = ()) -> list[ValidationDefect]:
        defects: list[ValidationDefect] = []
        seen: set[int] = set()
        for node in self._nodes:
            if node.id in seen:
                defects.append(ValidationDefect(node.id, "Node Number", f"Duplicate node number {node.id}"))
            seen.add(node.id)
            if is_malformed(node.routing):
                defects.append(
                    ValidationDefect(node.id, "What Next?", f"Malformed routing {node.routing[:80]!r}")
                )
            if parse_next_nodes(node.next_nodes) is None:
                defects.append(
                    ValidationDefect(node.id, "Next Nodes", f"Malformed successor list {node.next_nodes[:80]!r}")
                )
        for node_id, column, target in self.dangling_references():
            defects.append(ValidationDefect(node_id, column, f"Reference to node {target} does not exist"))
        for required in required_ids:
            if required not in seen:
                defects.append(ValidationDefect(required, "Node Number", f"Required system node {required} is missing"))
        return defects

    # -- mutation (refinement loop only) -------------------------------

    def replace_node(self, node: Node) -> None:
        for idx, existing in enumerate(self._nodes):
            if existing.id == node.id:
                self._nodes[idx] = node
                return
        raise KeyError(node.id)

    def insert_node(self, node: Node) -> None:
        if self.find_node(node.id) is not None:
            raise DuplicateNodeError(node.id)
        self._nodes.append(node)


__all__ = [
    "COLUMNS",
    "FlowGraph",
    "Node",
    "NodeKind",
    "RichPresentation",
    "SYSTEM_BEHAVIORS",
]
