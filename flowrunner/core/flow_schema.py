"""Flow schema definitions using Pydantic models.

This module defines the persisted flow format: a flow is a list of typed
nodes plus a list of edges connecting node handles (ports). Node data is an
opaque per-type payload; it is validated by the node type's own data model
(see flowrunner.core.migrations).

Persisted keys are camelCase (``sourceHandle``, ``targetHandle``,
``waitForIncoming``) to stay compatible with flows written by the editor.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

VERSION_KEY = "_version"


class DataCategory(str, Enum):
    """Data categories carried by handles"""

    ANY = "any"  # Compatible with every other category
    STRING = "string"  # Text
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"  # Mapping / structured result
    ARRAY = "array"
    SCHEMA = "schema"  # JSON schema document


class NodeStatus(str, Enum):
    """Execution status for a node visit"""

    PENDING = "pending"  # Not yet visited
    RUNNING = "running"  # Executor in flight
    COMPLETED = "completed"  # Executor returned outputs or a control signal
    SKIPPED = "skipped"  # Branch not selected, disabled, or empty loop body
    FAILED = "failed"  # Executor raised or timed out


class HandleSpec(BaseModel):
    """A declared connection point on a node.

    ``id=None`` denotes the single unnamed port of a node.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None
    category: DataCategory = DataCategory.ANY
    required: bool = False
    default: Any = None
    label: str | None = None


class NodeHandles(BaseModel):
    """Input and output handles of a node (static or data-driven)."""

    inputs: list[HandleSpec] = Field(default_factory=list)
    outputs: list[HandleSpec] = Field(default_factory=list)


class NodeData(BaseModel):
    """Base model for every node type's data payload.

    Unknown keys are preserved so authoring-layer metadata (labels, sizes,
    colors) survives normalization.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

    # Disabled nodes stop their execution path without running
    disabled: bool = False
    # Readiness policy for nodes with multiple incoming edges
    wait_for_incoming: Literal["all", "any"] = "all"


class SpecNode(BaseModel):
    """A node as persisted in a flow."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class SpecEdge(BaseModel):
    """Directed edge from an output handle to an input handle"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    source: str  # Source node ID
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target: str  # Target node ID
    target_handle: str | None = Field(default=None, alias="targetHandle")


class SpecFlow(BaseModel):
    """Complete flow definition"""

    model_config = ConfigDict(extra="allow")

    nodes: list[SpecNode] = Field(default_factory=list)
    edges: list[SpecEdge] = Field(default_factory=list)

    def node_map(self) -> dict[str, SpecNode]:
        """Map node id -> node (first occurrence wins on duplicates)."""
        mapping: dict[str, SpecNode] = {}
        for node in self.nodes:
            mapping.setdefault(node.id, node)
        return mapping

    def get_node(self, node_id: str) -> SpecNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def incoming(self, node_id: str) -> list[SpecEdge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[SpecEdge]:
        return [e for e in self.edges if e.source == node_id]

    def duplicate_ids(self) -> tuple[list[str], list[str]]:
        """Return (duplicate node ids, duplicate edge ids) in authored order."""
        dup_nodes: list[str] = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen and node.id not in dup_nodes:
                dup_nodes.append(node.id)
            seen.add(node.id)

        dup_edges: list[str] = []
        seen = set()
        for edge in self.edges:
            if edge.id in seen and edge.id not in dup_edges:
                dup_edges.append(edge.id)
            seen.add(edge.id)
        return dup_nodes, dup_edges

    def _to_networkx(self, exclude_edges: set[str] | None = None) -> nx.MultiDiGraph:
        """Convert to a NetworkX MultiDiGraph keyed by edge id.

        Edges whose endpoints are missing are left out; the resolver reports
        them separately.
        """
        G = nx.MultiDiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            if exclude_edges and edge.id in exclude_edges:
                continue
            if edge.source in G and edge.target in G:
                G.add_edge(edge.source, edge.target, key=edge.id)
        return G

    def to_document(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase) format."""
        return self.model_dump(mode="json", by_alias=True)
