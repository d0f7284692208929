# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowrunner test suite.

This module provides foundational fixtures used across all test modules:
- A registry holding the built-in catalog plus a few test-only node types
- An engine wired to an in-memory notifier
- A small builder for assembling flows in persisted (camelCase) form

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from flowrunner.core.config import EngineConfig
from flowrunner.core.context import NodeContext
from flowrunner.core.engine import FlowEngine
from flowrunner.core.flow_schema import NodeData, SpecFlow
from flowrunner.core.notify import CollectingNotifier
from flowrunner.core.registry import NodeDefinition, NodeRegistry
from flowrunner.core.results import Branch
from flowrunner.nodes import register_builtin_nodes
from flowrunner.nodes.base import MAIN_INPUT, MAIN_OUTPUT


# =============================================================================
# Test-only node types
# =============================================================================


class SleepNodeData(NodeData):
    seconds: float = 0.0


async def _execute_sleep(ctx: NodeContext) -> dict[str, Any]:
    await asyncio.sleep(ctx.data.seconds)
    return {"main": ctx.main}


class FailNodeData(NodeData):
    message: str = "boom"


async def _execute_fail(ctx: NodeContext) -> None:
    raise RuntimeError(ctx.data.message)


async def _execute_cancel(ctx: NodeContext) -> dict[str, Any]:
    ctx.cancel_token.cancel("stopped by test")
    return {"main": ctx.main}


def _execute_sync_upper(ctx: NodeContext) -> dict[str, Any]:
    return {"main": str(ctx.main).upper()}


async def _execute_bad_branch(ctx: NodeContext) -> Branch:
    return Branch("nowhere", ctx.main)


TEST_DEFINITIONS = [
    NodeDefinition(
        type="sleepNode",
        label="Sleep",
        category="Test",
        data_model=SleepNodeData,
        execute=_execute_sleep,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="failNode",
        label="Fail",
        category="Test",
        data_model=FailNodeData,
        execute=_execute_fail,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="cancelNode",
        label="Cancel",
        category="Test",
        data_model=NodeData,
        execute=_execute_cancel,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="syncUpperNode",
        label="Sync Upper",
        category="Test",
        data_model=NodeData,
        execute=_execute_sync_upper,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="badBranchNode",
        label="Bad Branch",
        category="Test",
        data_model=NodeData,
        execute=_execute_bad_branch,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
]


# =============================================================================
# Flow Builder
# =============================================================================


class FlowBuilder:
    """Assembles a flow document node by node.

    Example:
        flow = (
            FlowBuilder()
            .node("t", "triggerNode")
            .node("log", "logNode", prefix="> ")
            .edge("t", "log", "main", "main")
            .build()
        )
    """

    def __init__(self):
        self.nodes: list[dict[str, Any]] = []
        self.edges: list[dict[str, Any]] = []

    def node(self, node_id: str, node_type: str, version: int | None = None, **data: Any) -> FlowBuilder:
        if version is not None:
            data["_version"] = version
        self.nodes.append({"id": node_id, "type": node_type, "data": data})
        return self

    def edge(
        self,
        source: str,
        target: str,
        source_handle: str | None = "main",
        target_handle: str | None = "main",
        edge_id: str | None = None,
    ) -> FlowBuilder:
        self.edges.append(
            {
                "id": edge_id or f"e{len(self.edges) + 1}",
                "source": source,
                "sourceHandle": source_handle,
                "target": target,
                "targetHandle": target_handle,
            }
        )
        return self

    def document(self, **extra: Any) -> dict[str, Any]:
        return {"nodes": self.nodes, "edges": self.edges, **extra}

    def build(self, **extra: Any) -> SpecFlow:
        return SpecFlow.model_validate(self.document(**extra))


# =============================================================================
# Registry and Engine Fixtures
# =============================================================================


@pytest.fixture
def registry() -> NodeRegistry:
    """Fresh registry with the built-in catalog and the test node types."""
    reg = NodeRegistry()
    register_builtin_nodes(reg)
    for definition in TEST_DEFINITIONS:
        reg.register(definition)
    return reg


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def engine(registry: NodeRegistry, notifier: CollectingNotifier) -> FlowEngine:
    return FlowEngine(registry=registry, notifier=notifier, id_factory=lambda: "run-1")


@pytest.fixture
def make_engine(registry: NodeRegistry, notifier: CollectingNotifier):
    """Factory for engines with a custom config or history."""

    def _make(**kwargs: Any) -> FlowEngine:
        kwargs.setdefault("config", EngineConfig())
        kwargs.setdefault("notifier", notifier)
        return FlowEngine(registry=registry, **kwargs)

    return _make


@pytest.fixture
def flow_builder() -> type[FlowBuilder]:
    """The FlowBuilder class; call it to start a new flow."""
    return FlowBuilder


@pytest.fixture
def linear_flow() -> SpecFlow:
    """trigger -> log -> log"""
    return (
        FlowBuilder()
        .node("t", "triggerNode")
        .node("a", "logNode", version=2)
        .node("b", "logNode", version=2, prefix="b: ")
        .edge("t", "a")
        .edge("a", "b")
        .build(name="linear")
    )


@pytest.fixture
def write_flow(tmp_path: Path):
    """Write a flow document to a JSON file and return its path."""

    def _write(flow: SpecFlow | dict[str, Any], name: str = "flow.json") -> Path:
        document = flow.to_document() if isinstance(flow, SpecFlow) else flow
        path = tmp_path / name
        path.write_text(json.dumps(document, indent=2))
        return path

    return _write
