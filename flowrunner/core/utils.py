"""Shared utility functions for flowrunner core and node modules.

Kept free of intra-package imports so every module can use them without
circular imports.
"""

import uuid
from typing import Any


def new_id() -> str:
    """Default unique-id source for nodes, edges, conditions and runs."""
    return str(uuid.uuid4())


def resolve_input(inputs: dict[str | None, Any], data: Any, key: str, default: Any = None) -> Any:
    """Return the connected input value for ``key``, else the node's static value.

    A connected value of ``None`` counts as "not provided" so an upstream node
    that produced nothing falls back to the authored value.

    Args:
        inputs: Resolved input values keyed by handle id
        data: Validated node data model (attribute lookup)
        key: Handle id, also the snake_case attribute name on ``data``
        default: Returned when neither side provides a value

    Returns:
        The resolved value
    """
    value = inputs.get(key)
    if value is not None:
        return value
    static = getattr(data, key, None)
    return default if static is None else static


def json_safe(value: Any, max_depth: int = 20) -> Any:
    """Convert a value to something json.dumps accepts.

    Unknown objects are rendered with repr(); recursion is capped so
    self-referencing structures cannot blow the stack.
    """
    if max_depth <= 0:
        return "<max depth>"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): json_safe(v, max_depth - 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v, max_depth - 1) for v in value]
    if hasattr(value, "model_dump"):
        return json_safe(value.model_dump(mode="json"), max_depth - 1)
    return repr(value)
