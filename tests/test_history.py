"""Tests for the SQLite run history."""

from datetime import UTC, datetime, timedelta

import pytest

from flowrunner.core.exceptions import ExecutionError
from flowrunner.core.flow_schema import NodeStatus
from flowrunner.core.history import RunHistory
from flowrunner.core.results import NodeRunRecord, RunResult, RunStatus


def _result(run_id: str, status: RunStatus = RunStatus.COMPLETED, **kwargs) -> RunResult:
    started = datetime(2026, 1, 1, tzinfo=UTC)
    return RunResult(
        run_id=run_id,
        status=status,
        started_at=started,
        finished_at=started + timedelta(seconds=1),
        **kwargs,
    )


@pytest.fixture
def history(tmp_path) -> RunHistory:
    return RunHistory(tmp_path / "runs" / "history.db", max_runs=3)


class TestRunHistory:
    def test_record_and_get(self, history):
        record = NodeRunRecord(node_id="a", type="logNode", status=NodeStatus.COMPLETED)
        history.record(
            _result("r1", executed_nodes=[record], outputs={"a": {"main": object()}}),
            flow_name="demo",
        )
        entry = history.get("r1")

        assert entry.flow_name == "demo"
        assert entry.status == "completed"
        assert entry.executed == 1
        assert entry.started_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert entry.outputs["a"]["main"].startswith("<object")

    def test_get_unknown_run(self, history):
        assert history.get("missing") is None

    def test_failed_run_summary(self, history):
        error = ExecutionError("m", "mathNode", ZeroDivisionError("Division by zero"))
        history.record(_result("r1", RunStatus.FAILED, error=error))
        entry = history.get("r1")
        assert entry.failed_node == "m"
        assert "Division by zero" in entry.error

    def test_recent_newest_first(self, history):
        for run_id in ("r1", "r2", "r3"):
            history.record(_result(run_id))
        assert [e.run_id for e in history.recent()] == ["r3", "r2", "r1"]
        assert [e.run_id for e in history.recent(limit=1)] == ["r3"]

    def test_prunes_to_max_runs(self, history):
        for i in range(5):
            history.record(_result(f"r{i}"))
        assert [e.run_id for e in history.recent()] == ["r4", "r3", "r2"]

    def test_zero_size_keeps_nothing(self, tmp_path):
        history = RunHistory(tmp_path / "h.db", max_runs=0)
        history.record(_result("r1"))
        assert history.recent() == []

    def test_clear(self, history):
        history.record(_result("r1"))
        history.record(_result("r2"))
        assert history.clear() == 2
        assert history.recent() == []

    def test_ended_early_flag(self, history):
        history.record(_result("r1", ended_early=True, end_node_id="end"))
        assert history.get("r1").ended_early
