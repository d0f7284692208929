"""Run-scoped flow variables.

Variables live for one run and are shared by every node of that run,
including across loop iterations.
"""

from __future__ import annotations

from typing import Any

import jsonschema

from flowrunner.core.context import NodeContext
from flowrunner.core.flow_schema import DataCategory, NodeData
from flowrunner.core.registry import NodeDefinition
from flowrunner.nodes.base import MAIN_INPUT, MAIN_OUTPUT, handle


class SetFlowVariableNodeData(NodeData):
    variable_name: str = ""


async def execute_set_flow_variable(ctx: NodeContext) -> None:
    name = ctx.get("variable_name")
    if not name:
        raise ValueError("Variable name is required")
    # An unconnected 'value' stores the main input
    value = ctx.inputs["value"] if "value" in ctx.inputs else ctx.main
    ctx.variables[name] = value


class GetFlowVariableNodeData(NodeData):
    variable_name: str = ""


async def execute_get_flow_variable(ctx: NodeContext) -> dict[str, Any]:
    name = ctx.get("variable_name")
    if not name:
        raise ValueError("Variable name is required")
    if name not in ctx.variables:
        raise KeyError(f"Flow variable '{name}' not found")
    value = ctx.variables[name]

    schema = ctx.inputs.get("schema")
    if schema is not None:
        if not isinstance(schema, dict):
            raise TypeError("Schema input must be a JSON schema object")
        try:
            jsonschema.validate(value, schema)
        except jsonschema.ValidationError as e:
            raise ValueError(f"Flow variable '{name}' failed schema validation: {e.message}") from e
    return {"value": value}


DEFINITIONS = [
    NodeDefinition(
        type="setFlowVariableNode",
        label="Set Flow Variable",
        category="Variables",
        description="Stores a value under a name for the rest of the run.",
        data_model=SetFlowVariableNodeData,
        execute=execute_set_flow_variable,
        inputs=(
            MAIN_INPUT,
            handle("value"),
            handle("variable_name", DataCategory.STRING),
        ),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="getFlowVariableNode",
        label="Get Flow Variable",
        category="Variables",
        description="Reads a flow variable, optionally validating it against a JSON schema.",
        data_model=GetFlowVariableNodeData,
        execute=execute_get_flow_variable,
        inputs=(
            MAIN_INPUT,
            handle("variable_name", DataCategory.STRING),
            handle("schema", DataCategory.SCHEMA),
        ),
        outputs=(MAIN_OUTPUT, handle("value")),
    ),
]
