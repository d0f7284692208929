"""Helpers shared by the built-in node definitions."""

from __future__ import annotations

import re
from typing import Any

from flowrunner.core.flow_schema import DataCategory, HandleSpec

MAIN_INPUT = HandleSpec(id="main", category=DataCategory.ANY, label="Main")
MAIN_OUTPUT = HandleSpec(id="main", category=DataCategory.ANY, label="Main")


def handle(
    handle_id: str,
    category: DataCategory = DataCategory.ANY,
    required: bool = False,
    default: Any = None,
    label: str | None = None,
) -> HandleSpec:
    return HandleSpec(
        id=handle_id,
        category=category,
        required=required,
        default=default,
        label=label or handle_id.replace("_", " ").title(),
    )


def numbered_inputs(prefix: str, count: int, category: DataCategory = DataCategory.ANY) -> list[HandleSpec]:
    """``count`` inputs named ``<prefix>0``, ``<prefix>1``, ..."""
    return [handle(f"{prefix}{i}", category, label=f"{prefix.rstrip('_').title()} {i + 1}") for i in range(count)]


def collect_numbered(inputs: dict[str | None, Any], prefix: str) -> list[Any]:
    """Values of connected ``<prefix>N`` inputs ordered by N."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    numbered = []
    for key, value in inputs.items():
        match = pattern.match(key) if isinstance(key, str) else None
        if match:
            numbered.append((int(match.group(1)), value))
    return [value for _, value in sorted(numbered, key=lambda pair: pair[0])]
