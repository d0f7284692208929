"""Flow execution engine.

Runs a resolved ExecutionPlan region by region. A region is the set of nodes
sharing one loop scope stack; the root region has the empty stack and each
loop node owns the region of its body. Regions run in dependency order with
authored order breaking ties, so a run is deterministic.

Control flow travels as executor return values (see flowrunner.core.results):
- Branch: only edges leaving the selected handle stay live
- Iterate: the loop node's body region runs once per item
- LoopBreak / LoopContinue: end the loop / the current iteration of the
  innermost enclosing loop
- FlowEnd: stop the whole run successfully
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from flowrunner.core.config import EngineConfig
from flowrunner.core.context import NodeContext
from flowrunner.core.exceptions import ExecutionError, RunCancelledError, SubflowError
from flowrunner.core.flow_io import find_flow, load_flow
from flowrunner.core.flow_schema import NodeStatus, SpecFlow
from flowrunner.core.notify import FilteringNotifier, LoggingNotifier, Notifier, safe_notify
from flowrunner.core.registry import ControlKind, NodeRegistry, default_registry
from flowrunner.core.resolver import LOOP_BODY_HANDLES, ExecutionPlan, GraphResolver, PlannedNode
from flowrunner.core.results import (
    Branch,
    DataOutputs,
    FlowEnd,
    Iterate,
    LoopBreak,
    LoopContinue,
    NodeRunRecord,
    RunResult,
    RunStatus,
    normalize_result,
)
from flowrunner.core.utils import new_id

if TYPE_CHECKING:
    from flowrunner.core.history import RunHistory

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe cancellation flag, checked before every node invocation."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _Outcome(str, Enum):
    """How a region finished"""

    COMPLETED = "completed"
    BREAK = "break"
    CONTINUE = "continue"
    END = "end"


@dataclass
class _RunState:
    """All mutable state of one run. Never shared between runs."""

    run_id: str
    plan: ExecutionPlan
    cancel_token: CancelToken
    initial_input: Any
    node_timeout: float | None
    seed_outputs: dict[str, dict[str | None, Any]] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    statuses: dict[str, NodeStatus] = field(default_factory=dict)
    outputs: dict[str, dict[str | None, Any]] = field(default_factory=dict)
    # Branch node id -> selected output handle
    selected: dict[str, str] = field(default_factory=dict)
    records: list[NodeRunRecord] = field(default_factory=list)
    end_node_id: str | None = None
    # Sub-flow nesting level; 0 for a top-level run
    depth: int = 0

    def reset(self, node_ids: frozenset[str]) -> None:
        """Forget the previous iteration's state for a loop body."""
        for node_id in node_ids:
            self.statuses[node_id] = NodeStatus.PENDING
            self.outputs.pop(node_id, None)
            self.selected.pop(node_id, None)


class FlowEngine:
    """
    Executes flows against a node registry.

    One engine may serve many runs; each run() call owns its own state.

    Usage:
        engine = FlowEngine()
        result = asyncio.run(engine.run(flow, initial_input="hello"))
        result.raise_for_status()
    """

    def __init__(
        self,
        registry: NodeRegistry | None = None,
        config: EngineConfig | None = None,
        notifier: Notifier | None = None,
        id_factory: Callable[[], str] = new_id,
        history: RunHistory | None = None,
    ):
        self.registry = registry if registry is not None else default_registry()
        if not self.registry.frozen:
            self.registry.freeze()
        self.config = config or EngineConfig()
        self.notifier = FilteringNotifier(notifier or LoggingNotifier(), self.config.notifications)
        self.id_factory = id_factory
        self.history = history
        self.resolver = GraphResolver(self.registry)

    async def run(
        self,
        flow: SpecFlow,
        initial_input: Any = None,
        *,
        cancel_token: CancelToken | None = None,
        start_node_id: str | None = None,
        end_node_id: str | None = None,
        seed_outputs: dict[str, dict[str | None, Any]] | None = None,
        node_timeout: float | None = None,
        depth: int = 0,
    ) -> RunResult:
        """Run ``flow`` once.

        Args:
            flow: The flow to run
            initial_input: Value handed to trigger nodes
            cancel_token: Checked before every node invocation
            start_node_id: Run from this node (its descendants only)
            end_node_id: Run up to this node (its ancestors only)
            seed_outputs: Outputs of nodes outside a restricted plan, by node id
            node_timeout: Per-node timeout overriding the config
            depth: Sub-flow nesting level; runs above 0 are not recorded in history

        Returns:
            The RunResult; executor failures are reported there, not raised

        Raises:
            SchemaError: If node data is invalid (before anything runs)
            GraphError: If the flow is structurally invalid (before anything runs)
        """
        plan = self.resolver.resolve(flow, start_node_id=start_node_id, end_node_id=end_node_id)
        state = _RunState(
            run_id=self.id_factory(),
            plan=plan,
            cancel_token=cancel_token or CancelToken(),
            initial_input=initial_input,
            node_timeout=node_timeout if node_timeout is not None else self.config.node_timeout,
            seed_outputs=dict(seed_outputs or {}),
            statuses={node_id: NodeStatus.PENDING for node_id in plan.nodes},
            depth=depth,
        )

        started_at = datetime.now(UTC)
        logger.info(f"Run {state.run_id} started: {len(plan.nodes)} nodes, depth {depth}")
        safe_notify(self.notifier, "info", "Flow run started", "run")

        status = RunStatus.COMPLETED
        error: ExecutionError | None = None
        cancel_reason: str | None = None
        ended_early = False
        try:
            outcome = await self._run_region(state, (), ())
            ended_early = outcome == _Outcome.END
        except ExecutionError as e:
            status = RunStatus.FAILED
            error = e
            e.partial_outputs = {k: dict(v) for k, v in state.outputs.items()}
        except RunCancelledError as e:
            status = RunStatus.CANCELLED
            cancel_reason = str(e)

        result = RunResult(
            run_id=state.run_id,
            status=status,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            ended_early=ended_early,
            end_node_id=state.end_node_id,
            executed_nodes=state.records,
            statuses=dict(state.statuses),
            outputs=state.outputs,
            variables=dict(state.variables),
            error=error,
            cancel_reason=cancel_reason,
        )
        self._report(result, (flow.model_extra or {}).get("name"), record=depth == 0)
        return result

    def _report(self, result: RunResult, flow_name: str | None = None, record: bool = True) -> None:
        if result.status == RunStatus.FAILED:
            logger.error(f"Run {result.run_id} failed: {result.error}")
            safe_notify(self.notifier, "error", f"Flow failed: {result.error}", "run")
        elif result.status == RunStatus.CANCELLED:
            logger.info(f"Run {result.run_id} cancelled: {result.cancel_reason}")
            safe_notify(self.notifier, "warning", f"Flow cancelled: {result.cancel_reason}", "run")
        elif result.ended_early:
            logger.info(f"Run {result.run_id} ended early at node {result.end_node_id}")
            safe_notify(self.notifier, "info", f"Flow ended at node {result.end_node_id}", "run")
        else:
            logger.info(f"Run {result.run_id} completed: {len(result.executed_node_ids)} nodes executed")
            safe_notify(self.notifier, "success", "Flow completed", "run")

        if self.history is not None and record:
            try:
                self.history.record(result, flow_name=flow_name)
            except Exception as e:
                logger.warning(f"Failed to record run {result.run_id} in history: {e}")

    # ========== Scheduling ==========

    async def _run_region(
        self, state: _RunState, scope: tuple[str, ...], loop_path: tuple[tuple[str, int], ...]
    ) -> _Outcome:
        """Run every node of one region in order until it finishes or signals."""
        for node_id in state.plan.region(scope):
            outcome = await self._visit(state, node_id, loop_path)
            if outcome in (_Outcome.BREAK, _Outcome.CONTINUE):
                if not scope:
                    planned = state.plan.nodes[node_id]
                    raise ExecutionError(
                        node_id, planned.type, f"loop {outcome.value} signal outside any loop"
                    )
                return outcome
            if outcome == _Outcome.END:
                return outcome
        return _Outcome.COMPLETED

    def _edge_live(self, state: _RunState, source: str, source_handle: str | None) -> bool | None:
        """Liveness of an edge; None for edges from outside a restricted plan."""
        if source not in state.plan.nodes:
            return None
        status = state.statuses.get(source, NodeStatus.PENDING)
        if status == NodeStatus.RUNNING:
            # Only a loop node is running while its body executes
            return source_handle in LOOP_BODY_HANDLES
        if status != NodeStatus.COMPLETED:
            return False
        selected = state.selected.get(source)
        return selected is None or selected == source_handle

    def _collect_inputs(self, state: _RunState, planned: PlannedNode) -> dict[str | None, Any] | None:
        """Gather input values, or None if the node must be skipped."""
        inputs: dict[str | None, Any] = {}
        verdicts: list[bool] = []
        for binding in state.plan.bindings.get(planned.id, []):
            live = self._edge_live(state, binding.source, binding.source_handle)
            if live is None:
                seeded = state.seed_outputs.get(binding.source, {})
                if binding.source_handle in seeded:
                    inputs[binding.target_handle] = seeded[binding.source_handle]
                continue
            verdicts.append(live)
            if live:
                source_outputs = state.outputs.get(binding.source, {})
                if binding.source_handle in source_outputs:
                    inputs[binding.target_handle] = source_outputs[binding.source_handle]

        if verdicts:
            if planned.data.wait_for_incoming == "all" and not all(verdicts):
                return None
            if planned.data.wait_for_incoming == "any" and not any(verdicts):
                return None

        for handle in planned.handles.inputs:
            if handle.id not in inputs and handle.default is not None:
                inputs[handle.id] = handle.default
        return inputs

    def _skip(self, state: _RunState, planned: PlannedNode, loop_path: tuple[tuple[str, int], ...]) -> None:
        state.statuses[planned.id] = NodeStatus.SKIPPED
        state.records.append(
            NodeRunRecord(
                node_id=planned.id,
                type=planned.type,
                status=NodeStatus.SKIPPED,
                loop_path=list(loop_path),
            )
        )

    # ========== Node execution ==========

    async def _visit(self, state: _RunState, node_id: str, loop_path: tuple[tuple[str, int], ...]) -> _Outcome:
        planned = state.plan.nodes[node_id]

        if state.cancel_token.cancelled:
            raise RunCancelledError(state.cancel_token.reason or "Run cancelled")

        if planned.data.disabled:
            # Disabled nodes end their path and are not reported as executed
            state.statuses[node_id] = NodeStatus.SKIPPED
            logger.debug(f"Node {node_id} is disabled, skipping")
            return _Outcome.COMPLETED

        inputs = self._collect_inputs(state, planned)
        if inputs is None:
            logger.debug(f"Node {node_id} skipped: incoming edges not live")
            self._skip(state, planned, loop_path)
            if planned.definition.control == ControlKind.LOOP:
                for body_id in state.plan.loop_bodies.get(node_id, ()):
                    state.statuses[body_id] = NodeStatus.SKIPPED
            return _Outcome.COMPLETED

        state.statuses[node_id] = NodeStatus.RUNNING
        logger.debug(f"Dispatching node {node_id} ({planned.type})")
        started = time.monotonic()
        result = await self._invoke(state, planned, inputs, loop_path)

        outcome = _Outcome.COMPLETED
        signal: str | None = None
        output: Any = None
        if isinstance(result, Iterate):
            if planned.definition.control != ControlKind.LOOP:
                self._fail(state, planned, inputs, loop_path, started, "only loop nodes may return Iterate")
            try:
                outcome, output = await self._run_loop(state, planned, result, inputs, loop_path)
            except (ExecutionError, RunCancelledError) as e:
                # A failed or cancelled body leaves the loop failed, never running
                if state.statuses[node_id] == NodeStatus.RUNNING:
                    self._mark_failed(state, planned, inputs, loop_path, started, str(e))
                raise
            signal = "iterate"
        elif isinstance(result, Branch):
            if result.handle not in planned.output_ids():
                self._fail(state, planned, inputs, loop_path, started, f"unknown branch handle '{result.handle}'")
            state.selected[node_id] = result.handle
            output = {result.handle: result.value}
            signal = f"branch:{result.handle}"
        elif isinstance(result, DataOutputs):
            output = dict(result.values)
            if "main" in planned.output_ids() and "main" not in output and "main" in inputs:
                output["main"] = inputs["main"]
        else:
            output = {}
            if isinstance(result, LoopBreak):
                outcome, signal = _Outcome.BREAK, "break"
            elif isinstance(result, LoopContinue):
                outcome, signal = _Outcome.CONTINUE, "continue"
            elif isinstance(result, FlowEnd):
                outcome, signal = _Outcome.END, "end"
                state.end_node_id = node_id

        state.outputs[node_id] = output
        state.statuses[node_id] = NodeStatus.COMPLETED
        state.records.append(
            NodeRunRecord(
                node_id=node_id,
                type=planned.type,
                status=NodeStatus.COMPLETED,
                input=inputs,
                output=output,
                signal=signal,
                loop_path=list(loop_path),
                duration_ms=(time.monotonic() - started) * 1000,
            )
        )
        logger.debug(f"Node {node_id} completed{f' ({signal})' if signal else ''}")
        safe_notify(self.notifier, "info", f"Node {node_id} ({planned.type}) completed", "node")
        return outcome

    async def _invoke(
        self,
        state: _RunState,
        planned: PlannedNode,
        inputs: dict[str | None, Any],
        loop_path: tuple[tuple[str, int], ...],
    ):
        """Call the executor with the timeout applied; failures become ExecutionError."""
        ctx = NodeContext(
            run_id=state.run_id,
            node_id=planned.id,
            node_type=planned.type,
            data=planned.data,
            inputs=inputs,
            variables=state.variables,
            notifier=self.notifier,
            cancel_token=state.cancel_token,
            initial_input=state.initial_input,
            loop_path=loop_path,
            depth=state.depth,
            run_subflow=functools.partial(self._run_subflow, state),
        )
        started = time.monotonic()
        try:
            raw = planned.definition.execute(ctx)
            if inspect.isawaitable(raw):
                if state.node_timeout is not None:
                    raw = await asyncio.wait_for(raw, timeout=state.node_timeout)
                else:
                    raw = await raw
            return normalize_result(raw)
        except asyncio.TimeoutError:
            self._fail(
                state,
                planned,
                inputs,
                loop_path,
                started,
                f"timed out after {state.node_timeout}s",
                timed_out=True,
            )
        except (ExecutionError, RunCancelledError):
            raise
        except Exception as e:
            self._fail(state, planned, inputs, loop_path, started, e)

    def _fail(
        self,
        state: _RunState,
        planned: PlannedNode,
        inputs: dict[str | None, Any],
        loop_path: tuple[tuple[str, int], ...],
        started: float,
        cause: BaseException | str,
        timed_out: bool = False,
    ):
        """Mark the node failed and raise its ExecutionError."""
        error = ExecutionError(planned.id, planned.type, cause, timed_out=timed_out)
        self._mark_failed(state, planned, inputs, loop_path, started, str(cause) or type(cause).__name__)
        if isinstance(cause, BaseException):
            raise error from cause
        raise error

    def _mark_failed(
        self,
        state: _RunState,
        planned: PlannedNode,
        inputs: dict[str | None, Any],
        loop_path: tuple[tuple[str, int], ...],
        started: float,
        message: str,
    ) -> None:
        state.statuses[planned.id] = NodeStatus.FAILED
        state.records.append(
            NodeRunRecord(
                node_id=planned.id,
                type=planned.type,
                status=NodeStatus.FAILED,
                input=inputs,
                loop_path=list(loop_path),
                duration_ms=(time.monotonic() - started) * 1000,
                error=message,
            )
        )
        logger.error(f"Node {planned.id} ({planned.type}) failed: {message}")
        safe_notify(self.notifier, "error", f"Node {planned.id} failed: {message}", "node")

    async def _run_loop(
        self,
        state: _RunState,
        planned: PlannedNode,
        result: Iterate,
        inputs: dict[str | None, Any],
        loop_path: tuple[tuple[str, int], ...],
    ) -> tuple[_Outcome, dict[str | None, Any]]:
        """Run a loop node's body once per item; return (outcome, post-loop outputs)."""
        loop_id = planned.id
        items = list(result.items)
        limit = self.config.max_loop_iterations
        if len(items) > limit:
            self._fail(
                state,
                planned,
                inputs,
                loop_path,
                time.monotonic(),
                f"{len(items)} items exceed max_loop_iterations ({limit})",
            )

        body = state.plan.loop_bodies.get(loop_id, frozenset())
        scope = state.plan.scope_of(loop_id) + (loop_id,)
        iterations = 0
        results: list[Any] = []
        outcome = _Outcome.COMPLETED

        for index, item in enumerate(items):
            state.reset(body)
            state.outputs[loop_id] = {"item": item, "index": index}
            iterations += 1
            region_outcome = await self._run_region(state, scope, loop_path + ((loop_id, index),))
            if region_outcome == _Outcome.BREAK:
                logger.debug(f"Loop {loop_id} broken at index {index}")
                break
            if region_outcome == _Outcome.END:
                outcome = _Outcome.END
                break
            # Iterations that never reach the loop end contribute no result
            for binding in state.plan.loop_end_bindings.get(loop_id, []):
                if self._edge_live(state, binding.source, binding.source_handle):
                    source_outputs = state.outputs.get(binding.source, {})
                    if binding.source_handle in source_outputs:
                        results.append(source_outputs[binding.source_handle])
                        break

        if not items:
            for body_id in body:
                state.statuses[body_id] = NodeStatus.SKIPPED
            for body_id in state.plan.region(scope):
                self._skip(state, state.plan.nodes[body_id], loop_path + ((loop_id, 0),))

        output: dict[str | None, Any] = {"done": items, "iterations": iterations, "results": results}
        if "main" in planned.output_ids() and "main" in inputs:
            output["main"] = inputs["main"]
        return outcome, output

    # ========== Sub-flows ==========

    async def _run_subflow(self, state: _RunState, reference: str, initial_input: Any = None) -> RunResult:
        """Run the flow named by ``reference`` as a child of the current run.

        The child shares the cancel token and node timeout of its parent but
        has its own variables. Failures of the child are returned in its
        RunResult; only lookup and depth problems raise here.

        Raises:
            SubflowError: If nesting would exceed ``max_flow_depth``
            FlowFileError: If the flow cannot be found or loaded
        """
        depth = state.depth + 1
        limit = self.config.max_flow_depth
        if depth > limit:
            raise SubflowError(f"sub-flow '{reference}' would run at depth {depth}; max_flow_depth is {limit}")
        path = find_flow(reference, self.config.flows_dir)
        logger.debug(f"Run {state.run_id} starting sub-flow {path} at depth {depth}")
        return await self.run(
            load_flow(path),
            initial_input,
            cancel_token=state.cancel_token,
            node_timeout=state.node_timeout,
            depth=depth,
        )
