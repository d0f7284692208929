"""Node type registry.

The registry maps a node type string to its NodeDefinition: data model,
schema version and migrations, handles, executor and control-flow kind.
It is written during a registration phase, then frozen and only read.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from flowrunner.core.exceptions import RegistryError
from flowrunner.core.flow_schema import HandleSpec, NodeData, NodeHandles, SpecNode
from flowrunner.core.utils import new_id

if TYPE_CHECKING:
    from flowrunner.core.context import NodeContext
    from flowrunner.core.migrations import NodeMigration

logger = logging.getLogger(__name__)

NodeExecutor = Callable[["NodeContext"], Awaitable[Any]]


class ControlKind(str, Enum):
    """How the engine treats a node type beyond plain data flow"""

    NONE = "none"
    BRANCH = "branch"  # Returns Branch, selects one output handle
    LOOP = "loop"  # Returns Iterate, owns a body scope
    LOOP_BREAK = "loop_break"
    LOOP_CONTINUE = "loop_continue"
    END = "end"


@dataclass(frozen=True)
class NodeDefinition:
    """Everything the engine needs to know about one node type."""

    type: str
    label: str
    category: str
    data_model: type[NodeData]
    execute: NodeExecutor | None = None
    current_version: int = 1
    # Step ``v`` upgrades a payload from version v to v + 1
    migrations: Mapping[int, NodeMigration] = field(default_factory=dict)
    inputs: tuple[HandleSpec, ...] = ()
    outputs: tuple[HandleSpec, ...] = ()
    dynamic_handles: Callable[[Any], NodeHandles] | None = None
    control: ControlKind = ControlKind.NONE
    is_visual: bool = False
    # Builds initial data for new nodes; receives the id source for sub-items
    initial_data: Callable[[Callable[[], str]], dict[str, Any]] | None = None
    description: str = ""

    def __post_init__(self):
        if not self.is_visual and self.execute is None:
            raise RegistryError(f"Node type '{self.type}' has no executor")
        if self.current_version < 1:
            raise RegistryError(f"Node type '{self.type}' has invalid version {self.current_version}")

    def default_data(self, id_factory: Callable[[], str] = new_id) -> dict[str, Any]:
        if self.initial_data is not None:
            return self.initial_data(id_factory)
        return self.data_model().model_dump(by_alias=True)


class NodeRegistry:
    """Read-after-init table of node definitions keyed by type."""

    def __init__(self):
        self._definitions: dict[str, NodeDefinition] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(self, definition: NodeDefinition) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryError(
                    f"Cannot register '{definition.type}': registry is frozen"
                )
            if definition.type in self._definitions:
                raise RegistryError(f"Node type '{definition.type}' is already registered")
            self._definitions[definition.type] = definition
        logger.debug(f"Registered node type '{definition.type}'")

    def get(self, node_type: str) -> NodeDefinition | None:
        return self._definitions.get(node_type)

    def freeze(self) -> None:
        """End the registration phase. Later register() calls fail."""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def types(self) -> list[str]:
        return list(self._definitions)

    def definitions(self) -> list[NodeDefinition]:
        return list(self._definitions.values())

    def by_category(self) -> dict[str, list[NodeDefinition]]:
        grouped: dict[str, list[NodeDefinition]] = {}
        for definition in self._definitions.values():
            grouped.setdefault(definition.category, []).append(definition)
        return grouped

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._definitions

    def __iter__(self) -> Iterator[NodeDefinition]:
        return iter(list(self._definitions.values()))

    def __len__(self) -> int:
        return len(self._definitions)

    def create_node(
        self,
        node_type: str,
        node_id: str | None = None,
        id_factory: Callable[[], str] = new_id,
        **extra: Any,
    ) -> SpecNode:
        """Build a new node of ``node_type`` carrying the definition's default data.

        Raises:
            RegistryError: If the type is not registered
        """
        from flowrunner.core.migrations import dump_node_data

        definition = self.get(node_type)
        if definition is None:
            raise RegistryError(f"Unknown node type '{node_type}'")
        data = definition.data_model.model_validate(definition.default_data(id_factory))
        return SpecNode(
            id=node_id or id_factory(),
            type=node_type,
            data=dump_node_data(definition, data),
            **extra,
        )

    def describe(self, node_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Describe a node for a rendering layer: label, category, handles, data.

        ``data`` is migrated and validated first, so callers may pass raw
        persisted payloads of any supported version.

        Raises:
            RegistryError: If the type is not registered
            SchemaError: If ``data`` cannot be migrated or validated
        """
        from flowrunner.core.handles import resolve_handles
        from flowrunner.core.migrations import dump_node_data, migrate_node_data

        definition = self.get(node_type)
        if definition is None:
            raise RegistryError(f"Unknown node type '{node_type}'")
        raw = data if data is not None else definition.default_data()
        validated = migrate_node_data(definition, None, raw)
        handles = resolve_handles(definition, validated)
        return {
            "type": definition.type,
            "label": definition.label,
            "category": definition.category,
            "description": definition.description,
            "control": definition.control.value,
            "is_visual": definition.is_visual,
            "inputs": [h.model_dump(mode="json") for h in handles.inputs],
            "outputs": [h.model_dump(mode="json") for h in handles.outputs],
            "data": dump_node_data(definition, validated),
        }


_default_registry: NodeRegistry | None = None
_default_registry_lock = threading.Lock()


def default_registry() -> NodeRegistry:
    """Return the process-wide registry holding the built-in node catalog.

    Populated exactly once, then frozen.
    """
    global _default_registry
    with _default_registry_lock:
        if _default_registry is None:
            from flowrunner.nodes import register_builtin_nodes

            registry = NodeRegistry()
            register_builtin_nodes(registry)
            registry.freeze()
            _default_registry = registry
            logger.debug(f"Default registry initialized with {len(registry)} node types")
    return _default_registry
