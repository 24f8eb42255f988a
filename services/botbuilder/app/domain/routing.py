"""Routing micro-language: ``label~target|label~target``.

The hosting platform consumes this text bit-exactly, so parsing never
normalises whitespace or labels. A label is any text without ``~`` or ``|``;
a target is a base-10 integer that may be negative.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

EDGE_SEPARATOR = "|"
LABEL_SEPARATOR = "~"
ERROR_LABEL = "error"
WILDCARD_LABELS = frozenset({"*", "other"})

_EDGE_RE = re.compile(r"^([^~|]*)~(-?[0-9]+)$")


@dataclass(frozen=True)
class Edge:
    label: str
    target: int

    def encode(self) -> str:
        return f"{self.label}{LABEL_SEPARATOR}{self.target}"


def parse_routing(text: str) -> list[Edge]:
    """Parse a routing string; any malformed edge yields zero edges."""
    if not text:
        return []
    edges: list[Edge] = []
    for chunk in text.split(EDGE_SEPARATOR):
        match = _EDGE_RE.match(chunk)
        if match is None:
            return []
        edges.append(Edge(label=match.group(1), target=int(match.group(2))))
    return edges


def is_malformed(text: str) -> bool:
    return bool(text) and not parse_routing(text)


def format_routing(edges: Iterable[Edge]) -> str:
    encoded = []
    for edge in edges:
        if LABEL_SEPARATOR in edge.label or EDGE_SEPARATOR in edge.label:
            raise ValueError(f"Routing label {edge.label!r} contains a reserved character")
        encoded.append(edge.encode())
    return EDGE_SEPARATOR.join(encoded)


def select_target(edges: Sequence[Edge], outcome: str) -> int | None:
    """Return the target of the first edge whose label matches ``outcome``."""
    for edge in edges:
        if edge.label == outcome or edge.label in WILDCARD_LABELS:
            return edge.target
    return None


def failure_target(edges: Sequence[Edge]) -> int | None:
    for edge in edges:
        if edge.label == ERROR_LABEL:
            return edge.target
    return None


def parse_buttons(text: str) -> list[Edge]:
    """Lenient parse of a button list; entries without a numeric target are skipped."""
    edges: list[Edge] = []
    for chunk in text.split(EDGE_SEPARATOR):
        label, separator, target = chunk.partition(LABEL_SEPARATOR)
        if not separator or LABEL_SEPARATOR in target:
            continue
        try:
            edges.append(Edge(label=label, target=int(target.strip())))
        except ValueError:
            continue
    return edges


def parse_next_nodes(text: str) -> list[int] | None:
    """Parse a comma separated successor list; ``None`` when any entry is not an integer."""
    if not text or not text.strip():
        return []
    targets: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            targets.append(int(part))
        except ValueError:
            return None
    return targets


def rewrite_targets(text: str, mapping: dict[int, int]) -> str:
    edges = parse_routing(text)
    if not edges:
        return text
    return format_routing(Edge(edge.label, mapping.get(edge.target, edge.target)) for edge in edges)


__all__ = [
    "ERROR_LABEL",
    "Edge",
    "WILDCARD_LABELS",
    "failure_target",
    "format_routing",
    "is_malformed",
    "parse_buttons",
    "parse_next_nodes",
    "parse_routing",
    "rewrite_targets",
    "select_target",
]
