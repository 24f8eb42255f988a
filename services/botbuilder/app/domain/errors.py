"""Error taxonomy for the build pipeline.

Only critical-step failures are raised out of the pipeline. Everything that
merely degrades a build (missing scripts, failed preview or export, residual
validation defects) is reported as a warning string on the result instead.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .types import FailedRow


class BuilderError(Exception):
    """Base class for every error raised by the bot builder."""


class FlowGraphParseError(BuilderError):
    """The tabular serialization could not be read at all (e.g. missing header columns)."""


class DuplicateNodeError(BuilderError):
    def __init__(self, node_id: int) -> None:
        super().__init__(f"Node {node_id} already exists in the graph")
        self.node_id = node_id


class AdapterError(BuilderError):
    """Transport-level failure of an external collaborator (non-2xx, malformed body, timeout)."""

    def __init__(self, operation: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.status_code = status_code


class AuthenticationError(AdapterError):
    """The hosting API rejected the supplied credentials."""


class RateLimitedError(AdapterError):
    def __init__(self, operation: str, message: str, retry_after_s: float | None = None) -> None:
        super().__init__(operation, message, status_code=429)
        self.retry_after_s = retry_after_s


class PublishFailure(BuilderError):
    """Fatal: the hosting system refused to compile or activate the graph."""

    def __init__(self, message: str, failed_rows: list[FailedRow] | None = None, raw: Any = None) -> None:
        super().__init__(message)
        self.failed_rows = list(failed_rows or [])
        self.raw = raw


class StartupCheckError(BuilderError):
    """A bundled critical script is missing or empty."""


class CheckpointMismatchError(BuilderError, ValueError):
    """A checkpoint was supplied to a build for a different bot."""


class CheckpointConsumedError(BuilderError, ValueError):
    """A checkpoint may seed at most one resumed build."""


__all__ = [
    "AdapterError",
    "AuthenticationError",
    "BuilderError",
    "CheckpointConsumedError",
    "CheckpointMismatchError",
    "DuplicateNodeError",
    "FlowGraphParseError",
    "PublishFailure",
    "RateLimitedError",
    "StartupCheckError",
]
