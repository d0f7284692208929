"""Core modules for the flowrunner execution engine."""

from flowrunner.core.config import EngineConfig, load_config
from flowrunner.core.engine import CancelToken, FlowEngine
from flowrunner.core.exceptions import (
    ConfigError,
    ExecutionError,
    FlowFileError,
    FlowRunnerError,
    GraphError,
    GraphIssue,
    RegistryError,
    RunCancelledError,
    SchemaError,
    SubflowError,
)
from flowrunner.core.flow_schema import DataCategory, NodeStatus, SpecEdge, SpecFlow, SpecNode
from flowrunner.core.registry import ControlKind, NodeDefinition, NodeRegistry, default_registry
from flowrunner.core.resolver import ExecutionPlan, GraphResolver
from flowrunner.core.results import RunResult, RunStatus

__all__ = [
    "CancelToken",
    "ConfigError",
    "ControlKind",
    "DataCategory",
    "EngineConfig",
    "ExecutionError",
    "ExecutionPlan",
    "FlowEngine",
    "FlowFileError",
    "FlowRunnerError",
    "GraphError",
    "GraphIssue",
    "GraphResolver",
    "NodeDefinition",
    "NodeRegistry",
    "NodeStatus",
    "RegistryError",
    "RunCancelledError",
    "RunResult",
    "RunStatus",
    "SchemaError",
    "SpecEdge",
    "SpecFlow",
    "SpecNode",
    "SubflowError",
    "default_registry",
    "load_config",
]
