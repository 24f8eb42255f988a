"""Domain-level dataclasses shared across the build pipeline."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(frozen=True)
class ValidationDefect:
    node_id: int | None
    field: str
    message: str

    def describe(self) -> str:
        where = f"Node {self.node_id}" if self.node_id is not None else "Graph"
        prefix = f"[{self.field}] " if self.field else ""
        return f"{where}: {prefix}{self.message}"

    def as_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "field": self.field, "message": self.message}


@dataclass
class ScriptDescriptor:
    name: str
    content: str
    is_critical: bool = False
    used_by_node_ids: list[int] = field(default_factory=list)
    description: str = ""
    source: str = "bundled"

    def as_upload(self) -> dict[str, str]:
        return {"name": self.name, "content": self.content}


@dataclass
class ProjectConfig:
    client_name: str
    project_name: str
    project_type: str = "custom"
    description: str = ""
    target_company: str = ""
    key_features: list[str] = field(default_factory=list)
    branding: dict[str, Any] | None = None

    def as_context(self) -> dict[str, Any]:
        return {
            "clientName": self.client_name,
            "projectName": self.project_name,
            "projectType": self.project_type,
            "description": self.description,
            "targetCompany": self.target_company,
            "keyFeatures": list(self.key_features),
            "branding": self.branding,
        }

    @classmethod
    def from_context(cls, data: dict[str, Any]) -> "ProjectConfig":
        return cls(
            client_name=data.get("clientName", ""),
            project_name=data.get("projectName", ""),
            project_type=data.get("projectType", "custom"),
            description=data.get("description", ""),
            target_company=data.get("targetCompany", ""),
            key_features=list(data.get("keyFeatures") or []),
            branding=data.get("branding"),
        )


@dataclass(frozen=True)
class Credentials:
    token: str

    def __repr__(self) -> str:
        return "Credentials(token=***)"


class BuildStep(str, enum.Enum):
    generate = "generate"
    refine = "refine"
    resolve_dependencies = "resolve_dependencies"
    publish = "publish"
    provision_preview = "provision_preview"
    export = "export"
    done = "done"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class ProgressUpdate:
    step: BuildStep
    message: str
    progress: int
    details: str | None = None


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class FailedRow:
    """Per-node diagnosis extracted from a rejected publish."""

    node_id: int
    node_name: str = ""
    node_kind: str = ""
    fields: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    raw_row: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "nodeKind": self.node_kind,
            "fields": list(self.fields),
            "errors": list(self.errors),
            "rawRow": self.raw_row,
        }


__all__ = [
    "BuildStep",
    "Credentials",
    "FailedRow",
    "ProgressCallback",
    "ProgressUpdate",
    "ProjectConfig",
    "ScriptDescriptor",
    "ValidationDefect",
]
