"""Data transformation nodes.

Operation and parameter inputs follow the same rule everywhere: a connected
input wins, otherwise the node's static data value is used.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Literal

from pydantic import Field, field_validator

from flowrunner.core.context import NodeContext, check_template, render_template
from flowrunner.core.flow_schema import DataCategory, NodeData, NodeHandles
from flowrunner.core.registry import NodeDefinition
from flowrunner.nodes.base import MAIN_INPUT, MAIN_OUTPUT, collect_numbered, handle, numbered_inputs

STRING_PREFIX = "string_"
OBJECT_PREFIX = "object_"


# ========== Math ==========

MathOperation = Literal["add", "subtract", "multiply", "divide", "modulo", "power"]


class MathNodeData(NodeData):
    operation: MathOperation = "add"
    a: int | float = 0
    b: int | float = 0


async def execute_math(ctx: NodeContext) -> dict[str, Any]:
    operation = ctx.get("operation", "add")
    a = ctx.get("a", 0)
    b = ctx.get("b", 0)
    if isinstance(a, bool) or isinstance(b, bool) or not all(isinstance(v, (int, float)) for v in (a, b)):
        raise TypeError("Both inputs must be numbers")

    if operation == "add":
        return {"result": a + b}
    if operation == "subtract":
        return {"result": a - b}
    if operation == "multiply":
        return {"result": a * b}
    if operation == "divide":
        if b == 0:
            raise ZeroDivisionError("Division by zero")
        return {"result": a / b}
    if operation == "modulo":
        if b == 0:
            raise ZeroDivisionError("Division by zero for modulo")
        return {"result": a % b}
    if operation == "power":
        return {"result": a**b}
    raise ValueError(f"Unknown math operation: {operation}")


# ========== String tools ==========

StringOperation = Literal[
    "merge",
    "split",
    "join",
    "upper",
    "lower",
    "trim",
    "replace",
    "replace_all",
    "slice",
    "length",
    "starts_with",
    "ends_with",
]


class StringToolsNodeData(NodeData):
    operation: StringOperation = "merge"
    delimiter: str = ""
    search_value: str = ""
    replace_value: str = ""
    index: int = 0
    count: int | None = None
    # Number of string_N inputs used by "merge"
    input_count: int = Field(default=2, ge=0, le=50)


def _string_tools_handles(data: StringToolsNodeData) -> NodeHandles:
    return NodeHandles(inputs=numbered_inputs(STRING_PREFIX, data.input_count))


async def execute_string_tools(ctx: NodeContext) -> dict[str, Any]:
    operation = ctx.get("operation", "merge")
    text = ctx.inputs.get("string")
    text = "" if text is None else str(text)
    delimiter = ctx.get("delimiter", "")

    if operation == "merge":
        parts = [str(v) for v in collect_numbered(ctx.inputs, STRING_PREFIX) if v is not None]
        return {"result": delimiter.join(parts)}
    if operation == "split":
        if delimiter == "":
            return {"result": list(text)}
        return {"result": text.split(delimiter)}
    if operation == "join":
        items = ctx.inputs.get("array")
        if not isinstance(items, (list, tuple)):
            raise TypeError("Input for join must be an array")
        return {"result": delimiter.join(str(v) for v in items)}
    if operation == "upper":
        return {"result": text.upper()}
    if operation == "lower":
        return {"result": text.lower()}
    if operation == "trim":
        return {"result": text.strip()}
    if operation == "replace":
        return {"result": text.replace(ctx.get("search_value", ""), ctx.get("replace_value", ""), 1)}
    if operation == "replace_all":
        return {"result": text.replace(ctx.get("search_value", ""), ctx.get("replace_value", ""))}
    if operation == "slice":
        start = ctx.get("index", 0)
        count = ctx.get("count")
        return {"result": text[start:] if count is None else text[start:start + count]}
    if operation == "length":
        return {"result": len(text)}
    if operation == "starts_with":
        return {"result": text.startswith(ctx.get("search_value", ""))}
    if operation == "ends_with":
        return {"result": text.endswith(ctx.get("search_value", ""))}
    raise ValueError(f"Unknown string operation: {operation}")


# ========== Array tools ==========

ArrayOperation = Literal[
    "length", "get", "slice", "push", "pop", "shift", "unshift", "reverse", "includes", "sort", "unique"
]


class ArrayToolsNodeData(NodeData):
    operation: ArrayOperation = "length"
    index: int = 0
    end_index: int | None = None
    value: Any = None


async def execute_array_tools(ctx: NodeContext) -> dict[str, Any]:
    operation = ctx.get("operation", "length")
    items = ctx.inputs.get("array")
    if not isinstance(items, (list, tuple)):
        raise TypeError("An array must be connected to the 'array' input")
    # Never mutate a list another node may still hold
    working = copy.deepcopy(list(items))

    if operation == "length":
        return {"result": len(working)}
    if operation == "get":
        index = ctx.get("index", 0)
        if not -len(working) <= index < len(working):
            raise IndexError(f"Index {index} out of range for array of length {len(working)}")
        return {"result": working[index]}
    if operation == "slice":
        return {"result": working[ctx.get("index", 0):ctx.get("end_index")]}
    if operation in ("push", "unshift", "includes"):
        value = ctx.get("value")
        if value is None:
            raise ValueError(f"A value is required for '{operation}'")
        if operation == "includes":
            return {"result": value in working}
        if operation == "push":
            working.append(value)
        else:
            working.insert(0, value)
        return {"result": working, "array": working}
    if operation in ("pop", "shift"):
        item = None
        if working:
            item = working.pop() if operation == "pop" else working.pop(0)
        return {"result": item, "item": item, "array": working}
    if operation == "reverse":
        return {"result": working[::-1]}
    if operation == "sort":
        try:
            return {"result": sorted(working)}
        except TypeError as e:
            raise TypeError(f"Array items cannot be compared: {e}") from e
    if operation == "unique":
        unique: list[Any] = []
        for item in working:
            if item not in unique:
                unique.append(item)
        return {"result": unique}
    raise ValueError(f"Unknown array operation: {operation}")


# ========== Objects ==========


class MergeObjectsNodeData(NodeData):
    input_count: int = Field(default=2, ge=0, le=50)


def _merge_objects_handles(data: MergeObjectsNodeData) -> NodeHandles:
    return NodeHandles(inputs=numbered_inputs(OBJECT_PREFIX, data.input_count, DataCategory.OBJECT))


async def execute_merge_objects(ctx: NodeContext) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for value in collect_numbered(ctx.inputs, OBJECT_PREFIX):
        if isinstance(value, dict):
            merged.update(value)
    return {"result": merged}


class GetPropertyNodeData(NodeData):
    path: str = ""


_PATH_TOKEN = re.compile(r"[^.\[\]]+")


def get_path(obj: Any, path: str) -> Any:
    """Look up ``a.b[0].c`` style paths; missing segments yield None."""
    current = obj
    for token in _PATH_TOKEN.findall(path):
        if isinstance(current, dict):
            current = current.get(token)
        elif isinstance(current, (list, tuple)) and token.lstrip("-").isdigit():
            index = int(token)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


async def execute_get_property(ctx: NodeContext) -> dict[str, Any]:
    path = ctx.get("path")
    obj = ctx.inputs.get("object")
    if not path:
        raise ValueError("Property path is required")
    if not isinstance(obj, (dict, list)):
        raise TypeError(f"Input is not a valid object: {type(obj).__name__}")
    return {"value": get_path(obj, path)}


# ========== Type conversion ==========

TargetType = Literal["string", "number", "boolean", "object", "array"]

_EMPTY_VALUES: dict[str, Any] = {"string": "", "number": 0, "boolean": False, "object": {}, "array": []}


class TypeConverterNodeData(NodeData):
    target_type: TargetType = "string"


def convert_value(value: Any, target_type: str) -> Any:
    if value is None:
        return copy.deepcopy(_EMPTY_VALUES.get(target_type))
    if target_type == "string":
        return json.dumps(value, indent=2) if isinstance(value, (dict, list)) else str(value)
    if target_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            raise ValueError(f"'{value}' cannot be converted to a number")
        return int(number) if number.is_integer() else number
    if target_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() not in ("", "false", "0", "no", "off")
        return bool(value)
    if target_type in ("object", "array"):
        parsed = value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"Input is not valid JSON: {e}")
        if target_type == "array" and not isinstance(parsed, list):
            raise ValueError("Value is not an array")
        if target_type == "object" and not isinstance(parsed, dict):
            raise ValueError("Value is not an object")
        return parsed
    raise ValueError(f"Unsupported target type: {target_type}")


async def execute_type_converter(ctx: NodeContext) -> dict[str, Any]:
    return {"result": convert_value(ctx.inputs.get("value"), ctx.get("target_type", "string"))}


# ========== Templates ==========


class TemplateNodeData(NodeData):
    template: str = "{{ input }}"

    @field_validator("template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        error = check_template(v)
        if error:
            raise ValueError(error)
        return v


async def execute_template(ctx: NodeContext) -> dict[str, Any]:
    extra = ctx.inputs.get("context")
    scope = dict(extra) if isinstance(extra, dict) else {}
    scope.update({"input": ctx.main, "variables": dict(ctx.variables)})
    return {"result": render_template(ctx.get("template"), scope)}


DEFINITIONS = [
    NodeDefinition(
        type="mathNode",
        label="Math",
        category="Transform",
        description="Arithmetic on two numbers.",
        data_model=MathNodeData,
        execute=execute_math,
        inputs=(
            handle("operation", DataCategory.STRING),
            handle("a", DataCategory.NUMBER),
            handle("b", DataCategory.NUMBER),
        ),
        outputs=(handle("result", DataCategory.NUMBER),),
    ),
    NodeDefinition(
        type="stringToolsNode",
        label="String Tools",
        category="Transform",
        description="Merge, split, join, case, replace and slice strings.",
        data_model=StringToolsNodeData,
        execute=execute_string_tools,
        inputs=(
            MAIN_INPUT,
            handle("operation", DataCategory.STRING),
            handle("string", DataCategory.STRING),
            handle("array", DataCategory.ARRAY),
            handle("delimiter", DataCategory.STRING),
            handle("search_value", DataCategory.STRING),
            handle("replace_value", DataCategory.STRING),
        ),
        outputs=(MAIN_OUTPUT, handle("result")),
        dynamic_handles=_string_tools_handles,
    ),
    NodeDefinition(
        type="arrayToolsNode",
        label="Array Tools",
        category="Transform",
        description="Inspect and transform arrays without mutating the input.",
        data_model=ArrayToolsNodeData,
        execute=execute_array_tools,
        inputs=(
            MAIN_INPUT,
            handle("array", DataCategory.ARRAY, required=True),
            handle("operation", DataCategory.STRING),
            handle("index", DataCategory.NUMBER),
            handle("end_index", DataCategory.NUMBER),
            handle("value"),
        ),
        outputs=(
            MAIN_OUTPUT,
            handle("result"),
            handle("array", DataCategory.ARRAY),
            handle("item"),
        ),
    ),
    NodeDefinition(
        type="mergeObjectsNode",
        label="Merge Objects",
        category="Transform",
        description="Shallow-merges the connected objects; later inputs win.",
        data_model=MergeObjectsNodeData,
        execute=execute_merge_objects,
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT, handle("result", DataCategory.OBJECT)),
        dynamic_handles=_merge_objects_handles,
    ),
    NodeDefinition(
        type="getPropertyNode",
        label="Get Property",
        category="Transform",
        description="Reads a dotted path such as 'user.tags[0]' from an object.",
        data_model=GetPropertyNodeData,
        execute=execute_get_property,
        inputs=(
            MAIN_INPUT,
            handle("object", DataCategory.OBJECT, required=True),
            handle("path", DataCategory.STRING),
        ),
        outputs=(MAIN_OUTPUT, handle("value")),
    ),
    NodeDefinition(
        type="typeConverterNode",
        label="Type Converter",
        category="Transform",
        description="Converts a value to string, number, boolean, object or array.",
        data_model=TypeConverterNodeData,
        execute=execute_type_converter,
        inputs=(
            MAIN_INPUT,
            handle("value"),
            handle("target_type", DataCategory.STRING),
        ),
        outputs=(MAIN_OUTPUT, handle("result")),
    ),
    NodeDefinition(
        type="templateNode",
        label="Template",
        category="Transform",
        description="Renders a sandboxed jinja2 template with 'input' and 'variables'.",
        data_model=TemplateNodeData,
        execute=execute_template,
        inputs=(
            MAIN_INPUT,
            handle("context", DataCategory.OBJECT),
            handle("template", DataCategory.STRING),
        ),
        outputs=(MAIN_OUTPUT, handle("result", DataCategory.STRING)),
    ),
]
