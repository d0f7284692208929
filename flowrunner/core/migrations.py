"""Node data schema versioning and migration.

Every node payload carries a ``_version`` stamp. Loading a flow upgrades each
payload step by step (v -> v+1) to its type's current version and validates
the result against the type's data model, filling defaults. A migration step
may also rewrite edges touching the node, e.g. when an input handle is renamed.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from flowrunner.core.exceptions import SchemaError
from flowrunner.core.flow_schema import VERSION_KEY, NodeData, SpecEdge, SpecFlow, SpecNode

if TYPE_CHECKING:
    from flowrunner.core.registry import NodeDefinition, NodeRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeMigration:
    """One version step for a node type.

    ``data`` maps the old payload (without ``_version``) to the new one.
    ``edges`` receives the node (with upgraded data) and the flow's edge
    list and returns the rewritten edge list.
    """

    data: Callable[[dict[str, Any]], dict[str, Any]] | None = None
    edges: Callable[[SpecNode, list[SpecEdge]], list[SpecEdge]] | None = None


def rename_input_handle(old: str, new: str) -> Callable[[SpecNode, list[SpecEdge]], list[SpecEdge]]:
    """Edge step that retargets edges entering the node's ``old`` handle to ``new``."""

    def _rewrite(node: SpecNode, edges: list[SpecEdge]) -> list[SpecEdge]:
        return [
            edge.model_copy(update={"target_handle": new})
            if edge.target == node.id and edge.target_handle == old
            else edge
            for edge in edges
        ]

    return _rewrite


def read_version(node_id: str | None, raw: dict[str, Any]) -> int:
    """Return the payload's schema version; absent means 1."""
    version = raw.get(VERSION_KEY, 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise SchemaError(node_id, f"invalid schema version {version!r}", field=VERSION_KEY)
    return version


def _upgrade(
    definition: NodeDefinition, node_id: str | None, raw: Any
) -> tuple[dict[str, Any], list[NodeMigration]]:
    """Apply migration steps to a deep copy of ``raw``.

    Returns the upgraded payload (without ``_version``) and the steps applied.
    """
    if not isinstance(raw, dict):
        raise SchemaError(node_id, f"node data must be a mapping, got {type(raw).__name__}")

    version = read_version(node_id, raw)
    if version > definition.current_version:
        raise SchemaError(
            node_id,
            f"schema version {version} is newer than supported version "
            f"{definition.current_version} for '{definition.type}'",
            field=VERSION_KEY,
        )

    payload = copy.deepcopy(raw)
    payload.pop(VERSION_KEY, None)
    applied: list[NodeMigration] = []

    while version < definition.current_version:
        step = definition.migrations.get(version)
        if step is None:
            raise SchemaError(
                node_id,
                f"no migration for '{definition.type}' from version {version} to {version + 1}",
                field=VERSION_KEY,
            )
        if step.data is not None:
            try:
                payload = step.data(payload)
            except Exception as e:
                raise SchemaError(
                    node_id,
                    f"migration of '{definition.type}' from version {version} failed: {e}",
                ) from e
            if not isinstance(payload, dict):
                raise SchemaError(
                    node_id, f"migration of '{definition.type}' from version {version} returned no mapping"
                )
            payload.pop(VERSION_KEY, None)
        applied.append(step)
        version += 1
        logger.debug(f"Migrated {definition.type} node {node_id} to version {version}")

    return payload, applied


def validate_node_data(definition: NodeDefinition, node_id: str | None, payload: dict[str, Any]) -> NodeData:
    """Validate an already-current payload against the type's data model."""
    try:
        return definition.data_model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise SchemaError(node_id, first.get("msg", str(e)), field=field) from e


def migrate_node_data(definition: NodeDefinition, node_id: str | None, raw: Any) -> NodeData:
    """Upgrade ``raw`` to the current version and validate it.

    Raises:
        SchemaError: On a bad or too-new version, a missing or failing
            migration step, or a validation failure
    """
    payload, _ = _upgrade(definition, node_id, raw)
    return validate_node_data(definition, node_id, payload)


def dump_node_data(definition: NodeDefinition, data: NodeData) -> dict[str, Any]:
    """Serialize validated data in the persisted format, stamped with its version."""
    dumped = data.model_dump(mode="json", by_alias=True)
    dumped[VERSION_KEY] = definition.current_version
    return dumped


def migrate_flow(
    flow: SpecFlow,
    registry: NodeRegistry,
    errors: list[SchemaError] | None = None,
) -> SpecFlow:
    """Return a new flow with every node's data normalized to its current version.

    Edge rewrites declared by migration steps are applied in node order.

    Args:
        flow: The persisted flow
        registry: Source of node definitions
        errors: When given, failures are appended here instead of raised;
            failing nodes and nodes of unknown type are left unchanged

    Raises:
        SchemaError: If a node type is unknown or a payload cannot be migrated
            (only when ``errors`` is None)
    """
    edges = [edge.model_copy() for edge in flow.edges]
    nodes: list[SpecNode] = []

    for node in flow.nodes:
        definition = registry.get(node.type)
        if definition is None:
            if errors is None:
                raise SchemaError(node.id, f"unknown node type '{node.type}'", field="type")
            nodes.append(node)
            continue

        try:
            payload, applied = _upgrade(definition, node.id, node.data)
            data = validate_node_data(definition, node.id, payload)
        except SchemaError as e:
            if errors is None:
                raise
            errors.append(e)
            nodes.append(node)
            continue
        migrated = node.model_copy(update={"data": dump_node_data(definition, data)})

        for step in applied:
            if step.edges is not None:
                try:
                    edges = list(step.edges(migrated, edges))
                except Exception as e:
                    error = SchemaError(node.id, f"edge migration failed: {e}")
                    if errors is None:
                        raise error from e
                    errors.append(error)
        nodes.append(migrated)

    return flow.model_copy(update={"nodes": nodes, "edges": edges})
