"""Constant value nodes."""

from __future__ import annotations

from typing import Any

from jsonschema.exceptions import SchemaError as JSONSchemaError
from jsonschema.validators import validator_for
from pydantic import field_validator

from flowrunner.core.context import NodeContext
from flowrunner.core.flow_schema import DataCategory, NodeData
from flowrunner.core.registry import NodeDefinition
from flowrunner.nodes.base import handle


class StringNodeData(NodeData):
    value: str = ""


class NumberNodeData(NodeData):
    value: int | float = 0


class BooleanNodeData(NodeData):
    value: bool = False


class JsonNodeData(NodeData):
    value: dict[str, Any] | list[Any] = {}


class SchemaNodeData(NodeData):
    json_schema: dict[str, Any] = {"type": "object"}

    @field_validator("json_schema")
    @classmethod
    def validate_schema(cls, v: dict[str, Any]) -> dict[str, Any]:
        try:
            validator_for(v).check_schema(v)
        except JSONSchemaError as e:
            raise ValueError(f"invalid JSON schema: {e.message}")
        return v


async def execute_value(ctx: NodeContext) -> dict[str, Any]:
    return {"value": ctx.get("value")}


async def execute_schema(ctx: NodeContext) -> dict[str, Any]:
    return {"schema": ctx.data.json_schema}


def _value_node(node_type: str, label: str, model: type[NodeData], category: DataCategory) -> NodeDefinition:
    return NodeDefinition(
        type=node_type,
        label=label,
        category="Values",
        description=f"Emits a constant {category.value} value.",
        data_model=model,
        execute=execute_value,
        inputs=(handle("value", category),),
        outputs=(handle("value", category),),
    )


DEFINITIONS = [
    _value_node("stringNode", "String", StringNodeData, DataCategory.STRING),
    _value_node("numberNode", "Number", NumberNodeData, DataCategory.NUMBER),
    _value_node("booleanNode", "Boolean", BooleanNodeData, DataCategory.BOOLEAN),
    _value_node("jsonNode", "JSON", JsonNodeData, DataCategory.ANY),
    NodeDefinition(
        type="schemaNode",
        label="Schema",
        category="Values",
        description="Emits a JSON schema for validating variables.",
        data_model=SchemaNodeData,
        execute=execute_schema,
        outputs=(handle("schema", DataCategory.SCHEMA),),
    ),
]
