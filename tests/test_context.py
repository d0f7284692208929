"""Tests for the node context, sandboxed expressions and executor results."""

from datetime import UTC, datetime

import pytest

from flowrunner.core.context import (
    NodeContext,
    check_expression,
    check_template,
    evaluate_expression,
    render_template,
)
from flowrunner.core.engine import CancelToken
from flowrunner.core.exceptions import ExecutionError, GraphError, GraphIssue, SchemaError
from flowrunner.core.flow_schema import NodeData, NodeStatus
from flowrunner.core.notify import CollectingNotifier
from flowrunner.core.results import (
    Branch,
    DataOutputs,
    FlowEnd,
    NodeRunRecord,
    RunResult,
    RunStatus,
    normalize_result,
)
from flowrunner.core.utils import json_safe, resolve_input


class ThresholdData(NodeData):
    threshold: int | None = 5


def _context(inputs=None, notifier=None) -> NodeContext:
    return NodeContext(
        run_id="r",
        node_id="n",
        node_type="test",
        data=ThresholdData(),
        inputs=inputs or {},
        variables={},
        notifier=notifier or CollectingNotifier(),
        cancel_token=CancelToken(),
    )


class TestExpressions:
    """Tests for condition expression checking and evaluation."""

    def test_valid_expression(self):
        assert check_expression("input > 3 and variables.flag") is None

    def test_empty_expression(self):
        assert check_expression("   ") == "expression is empty"

    def test_syntax_error(self):
        assert check_expression("input >").startswith("syntax error")

    def test_evaluate(self):
        assert evaluate_expression("input * 2", {"input": 4}) == 8
        assert evaluate_expression("'b' in input", {"input": ["a", "b"]}) is True

    def test_undefined_name_raises(self):
        with pytest.raises(Exception):
            evaluate_expression("missing > 1", {"input": 1})

    def test_template_checks(self):
        assert check_template("{{ input }}") is None
        assert "line 1" in check_template("{{ input ")

    def test_render(self):
        assert render_template("{% for x in input %}{{ x }}{% endfor %}", {"input": [1, 2]}) == "12"


class TestNodeContext:
    def test_get_prefers_connected_input(self):
        assert _context({"threshold": 9}).get("threshold") == 9

    def test_get_falls_back_to_data(self):
        assert _context().get("threshold") == 5

    def test_none_input_falls_back(self):
        assert _context({"threshold": None}).get("threshold") == 5

    def test_get_default(self):
        assert _context().get("nothing", "fallback") == "fallback"

    def test_main(self):
        assert _context({"main": "x"}).main == "x"
        assert _context().main is None

    def test_notify_never_raises(self):
        class Broken:
            def notify(self, level, message, category="user"):
                raise RuntimeError("no display")

        _context(notifier=Broken()).notify("info", "hello")


class TestUtils:
    def test_resolve_input_default(self):
        assert resolve_input({}, ThresholdData(threshold=None), "threshold", 1) == 1

    def test_json_safe(self):
        class Opaque:
            def __repr__(self):
                return "<opaque>"

        assert json_safe({1: (Opaque(), {"a"})}) == {"1": ["<opaque>", ["a"]]}

    def test_json_safe_depth_limit(self):
        nested: list = []
        current = nested
        for _ in range(30):
            inner: list = []
            current.append(inner)
            current = inner
        assert "<max depth>" in str(json_safe(nested, max_depth=5))


class TestResults:
    """Tests for executor result normalization and run reports."""

    def test_dict_becomes_data_outputs(self):
        assert normalize_result({"a": 1}) == DataOutputs({"a": 1})

    def test_none_becomes_empty_outputs(self):
        assert normalize_result(None) == DataOutputs({})

    def test_signals_pass_through(self):
        assert normalize_result(Branch("x")) == Branch("x")
        assert normalize_result(FlowEnd()) == FlowEnd()

    def test_unsupported_value_rejected(self):
        with pytest.raises(TypeError, match="unsupported value"):
            normalize_result(42)

    def test_summary(self):
        now = datetime.now(UTC)
        error = ExecutionError("n1", "logNode", ValueError("bad"))
        result = RunResult(run_id="r", status=RunStatus.FAILED, started_at=now, finished_at=now, error=error)
        summary = result.summary()

        assert summary["status"] == "failed"
        assert summary["failed_node"] == "n1"
        assert "bad" in summary["error"]
        assert not result.succeeded

    def test_last_output(self):
        now = datetime.now(UTC)
        records = [
            NodeRunRecord(node_id="a", type="logNode", status=NodeStatus.COMPLETED, output={"main": 1}),
            NodeRunRecord(node_id="m", type="mathNode", status=NodeStatus.COMPLETED, output={"result": 2}),
            NodeRunRecord(node_id="s", type="logNode", status=NodeStatus.SKIPPED),
        ]
        result = RunResult(run_id="r", status=RunStatus.COMPLETED, started_at=now, finished_at=now)
        assert result.last_output is None

        result.executed_nodes = records
        assert result.last_output == {"result": 2}
        assert RunResult(
            run_id="r", status=RunStatus.COMPLETED, started_at=now, finished_at=now, executed_nodes=records[:1]
        ).last_output == 1


class TestExceptions:
    def test_schema_error_message(self):
        error = SchemaError("n1", "must be positive", field="count")
        assert str(error) == "Node [n1] field 'count': must be positive"

    def test_graph_error_summarizes(self):
        issues = [GraphIssue(f"problem {i}", node_id=f"n{i}") for i in range(7)]
        error = GraphError(issues)
        assert "(2 more)" in str(error)
        assert error.node_ids == {f"n{i}" for i in range(7)}

    def test_execution_error_message(self):
        error = ExecutionError("n1", "mathNode", ZeroDivisionError("Division by zero"))
        assert str(error) == "Execution failed at node n1 (mathNode): Division by zero"
        assert error.partial_outputs == {}
