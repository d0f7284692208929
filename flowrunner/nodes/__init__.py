"""Built-in node catalog."""

from flowrunner.core.registry import NodeRegistry
from flowrunner.nodes import logic, transform, triggers, utility, values, variables

BUILTIN_MODULES = (triggers, values, transform, variables, logic, utility)


def register_builtin_nodes(registry: NodeRegistry) -> None:
    """Register every built-in node type exactly once."""
    for module in BUILTIN_MODULES:
        for definition in module.DEFINITIONS:
            registry.register(definition)


__all__ = ["BUILTIN_MODULES", "register_builtin_nodes"]
