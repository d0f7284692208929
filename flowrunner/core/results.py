"""Executor results and run reports.

An executor returns exactly one ExecutorResult variant. Control signals are
ordinary return values, never exceptions, so every layer can tell a branch
selection or a loop break apart from a genuine failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from flowrunner.core.exceptions import ExecutionError, RunCancelledError
from flowrunner.core.flow_schema import NodeStatus


@dataclass(frozen=True)
class DataOutputs:
    """Ordinary data-flow completion: output handle id -> value."""

    values: dict[str | None, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Branch:
    """Continue execution only along edges leaving ``handle``."""

    handle: str
    value: Any = None


@dataclass(frozen=True)
class LoopBreak:
    """Terminate the nearest enclosing loop."""


@dataclass(frozen=True)
class LoopContinue:
    """Abandon the current iteration of the nearest enclosing loop."""


@dataclass(frozen=True)
class FlowEnd:
    """Stop the whole run successfully."""


@dataclass(frozen=True)
class Iterate:
    """Returned by loop constructs: run the body once per item."""

    items: list[Any]


ExecutorResult = DataOutputs | Branch | LoopBreak | LoopContinue | FlowEnd | Iterate


def normalize_result(result: Any) -> ExecutorResult:
    """Coerce an executor's raw return value into an ExecutorResult.

    Plain dicts become DataOutputs, ``None`` becomes empty outputs.
    """
    if isinstance(result, (DataOutputs, Branch, LoopBreak, LoopContinue, FlowEnd, Iterate)):
        return result
    if result is None:
        return DataOutputs({})
    if isinstance(result, dict):
        return DataOutputs(dict(result))
    raise TypeError(
        f"Executor returned unsupported value of type {type(result).__name__}; "
        "expected a dict, None, or an ExecutorResult"
    )


class RunStatus(str, Enum):
    """Terminal status of a run"""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeRunRecord(BaseModel):
    """One node visit in the execution report."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    node_id: str
    type: str
    status: NodeStatus
    input: dict[str | None, Any] = Field(default_factory=dict)
    output: Any = None
    signal: str | None = None  # branch:<handle>, break, continue, end, iterate
    loop_path: list[tuple[str, int]] = Field(default_factory=list)  # (loop id, index)
    duration_ms: float = 0.0
    error: str | None = None


class RunResult(BaseModel):
    """Final outcome of a flow run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    ended_early: bool = False
    end_node_id: str | None = None
    executed_nodes: list[NodeRunRecord] = Field(default_factory=list)
    statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    outputs: dict[str, dict[str | None, Any]] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    error: ExecutionError | None = None
    cancel_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def executed_node_ids(self) -> list[str]:
        return [r.node_id for r in self.executed_nodes if r.status != NodeStatus.SKIPPED]

    @property
    def last_output(self) -> Any:
        """Output of the last completed node visit; its ``main`` value when it has one."""
        for record in reversed(self.executed_nodes):
            if record.status != NodeStatus.COMPLETED:
                continue
            if isinstance(record.output, dict) and "main" in record.output:
                return record.output["main"]
            return record.output
        return None

    def records_for(self, node_id: str) -> list[NodeRunRecord]:
        return [r for r in self.executed_nodes if r.node_id == node_id]

    def raise_for_status(self) -> None:
        """Re-raise the run's failure, if any."""
        if self.status == RunStatus.FAILED and self.error is not None:
            raise self.error
        if self.status == RunStatus.CANCELLED:
            raise RunCancelledError(self.cancel_reason or "Run cancelled")

    def summary(self) -> dict[str, Any]:
        """JSON-safe summary used by the run history."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "ended_early": self.ended_early,
            "executed": len(self.executed_node_ids),
            "error": str(self.error) if self.error else self.cancel_reason,
            "failed_node": self.error.node_id if self.error else None,
        }
