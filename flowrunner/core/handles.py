"""Handle type system: resolving a node's ports and checking edges.

A node's handles are its definition's static handles plus, for types with
data-driven ports, handles computed from the node's current data.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from flowrunner.core.flow_schema import DataCategory, HandleSpec, NodeData, NodeHandles, SpecEdge

if TYPE_CHECKING:
    from flowrunner.core.registry import NodeDefinition

logger = logging.getLogger(__name__)

Direction = Literal["input", "output"]


def _merge(static: tuple[HandleSpec, ...] | list[HandleSpec], dynamic: list[HandleSpec]) -> list[HandleSpec]:
    """Static handles in declaration order; dynamic ones replace same-id entries."""
    overrides = {h.id: h for h in dynamic}
    merged = [overrides.pop(h.id, h) for h in static]
    merged.extend(h for h in dynamic if h.id in overrides)
    return merged


def resolve_handles(definition: NodeDefinition, data: NodeData) -> NodeHandles:
    """Return the node's effective input and output handles for ``data``."""
    if definition.dynamic_handles is None:
        return NodeHandles(inputs=list(definition.inputs), outputs=list(definition.outputs))
    dynamic = definition.dynamic_handles(data)
    return NodeHandles(
        inputs=_merge(definition.inputs, dynamic.inputs),
        outputs=_merge(definition.outputs, dynamic.outputs),
    )


def find_handle(handles: NodeHandles, handle_id: str | None, direction: Direction) -> HandleSpec | None:
    """Look up a handle by id on one side of a node.

    A ``None`` id also matches a node whose only handle on that side is
    named, which keeps single-port edges from older flows working.
    """
    candidates = handles.inputs if direction == "input" else handles.outputs
    for handle in candidates:
        if handle.id == handle_id:
            return handle
    if handle_id is None and len(candidates) == 1:
        return candidates[0]
    return None


def is_compatible(source: DataCategory, target: DataCategory) -> bool:
    """``any`` on either side accepts everything; otherwise categories must match."""
    if source == DataCategory.ANY or target == DataCategory.ANY:
        return True
    return source == target


def check_edge(edge: SpecEdge, source_handles: NodeHandles, target_handles: NodeHandles) -> list[str]:
    """Return the problems with ``edge`` given both endpoints' handles."""
    issues: list[str] = []
    source = find_handle(source_handles, edge.source_handle, "output")
    target = find_handle(target_handles, edge.target_handle, "input")
    if source is None:
        issues.append(f"source node {edge.source} has no output handle '{edge.source_handle}'")
    if target is None:
        issues.append(f"target node {edge.target} has no input handle '{edge.target_handle}'")
    if source is not None and target is not None and not is_compatible(source.category, target.category):
        issues.append(
            f"incompatible categories: '{source.category.value}' output "
            f"'{edge.source_handle}' cannot feed '{target.category.value}' input '{edge.target_handle}'"
        )
    return issues


def revalidate_node(
    node_id: str,
    handles: NodeHandles,
    edges: list[SpecEdge],
    other_handles: dict[str, NodeHandles],
) -> list[SpecEdge]:
    """Return the edges touching ``node_id`` that are invalid after a data change.

    Used when a node's data changes its dynamic handles (for example a
    condition is removed from an ``ifNode``): edges still pointing at a
    removed or re-typed handle are returned so the caller can drop them.

    Args:
        node_id: The node whose data changed
        handles: The node's freshly resolved handles
        edges: All edges of the flow
        other_handles: Resolved handles of every other node, by id
    """
    invalid: list[SpecEdge] = []
    for edge in edges:
        if edge.source == node_id:
            target = handles if edge.target == node_id else other_handles.get(edge.target)
            if target is None or check_edge(edge, handles, target):
                invalid.append(edge)
        elif edge.target == node_id:
            source = other_handles.get(edge.source)
            if source is None or check_edge(edge, source, handles):
                invalid.append(edge)
    if invalid:
        logger.debug(f"Node {node_id}: {len(invalid)} edge(s) invalidated by data change")
    return invalid
