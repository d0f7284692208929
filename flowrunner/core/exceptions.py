"""Error taxonomy for flow loading, resolution and execution.

Control signals (branch, break, continue, end) are NOT errors and never
travel as exceptions; see flowrunner.core.results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class FlowRunnerError(Exception):
    """Base class for all flowrunner errors."""

    pass


class RegistryError(FlowRunnerError):
    """Invalid node registration (duplicate type or frozen registry)."""

    pass


class ConfigError(FlowRunnerError):
    """Invalid engine configuration file."""

    pass


class FlowFileError(FlowRunnerError):
    """Flow file could not be read or decoded."""

    pass


class SchemaError(FlowRunnerError):
    """Node data failed migration or validation. Not retryable."""

    def __init__(self, node_id: str | None, message: str, field: str | None = None):
        self.node_id = node_id
        self.field = field
        self.message = message
        location = f"Node [{node_id}]" if node_id else "Node data"
        if field:
            location = f"{location} field '{field}'"
        super().__init__(f"{location}: {message}")


@dataclass(frozen=True)
class GraphIssue:
    """A single structural problem found while resolving a flow."""

    message: str
    node_id: str | None = None
    edge_id: str | None = None

    def __str__(self) -> str:
        if self.node_id:
            return f"Node [{self.node_id}]: {self.message}"
        if self.edge_id:
            return f"Edge [{self.edge_id}]: {self.message}"
        return self.message


class GraphError(FlowRunnerError):
    """Structural problem detected at resolve time. The run never starts."""

    def __init__(self, issues: list[GraphIssue]):
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f"; ... ({len(self.issues) - 5} more)"
        super().__init__(f"Invalid flow graph: {summary}")

    @property
    def node_ids(self) -> set[str]:
        return {i.node_id for i in self.issues if i.node_id}


class ExecutionError(FlowRunnerError):
    """A node executor failed or timed out during a run."""

    def __init__(
        self,
        node_id: str,
        node_type: str | None,
        cause: BaseException | str,
        timed_out: bool = False,
    ):
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        self.timed_out = timed_out
        # Filled in by the engine once the run is finalized
        self.partial_outputs: dict[str, Any] = {}
        reason = str(cause) or type(cause).__name__
        super().__init__(f"Execution failed at node {node_id} ({node_type}): {reason}")


class SubflowError(FlowRunnerError):
    """A sub-flow could not be started or did not complete."""

    pass


class RunCancelledError(FlowRunnerError):
    """Raised by RunResult.raise_for_status() for cancelled runs."""

    pass
