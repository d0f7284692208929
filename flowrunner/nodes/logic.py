"""Control-flow nodes: If, ForEach, Break, Continue and End."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from flowrunner.core.context import NodeContext, check_expression, evaluate_expression
from flowrunner.core.flow_schema import DataCategory, HandleSpec, NodeData, NodeHandles
from flowrunner.core.migrations import NodeMigration
from flowrunner.core.registry import ControlKind, NodeDefinition
from flowrunner.core.results import Branch, FlowEnd, Iterate, LoopBreak, LoopContinue
from flowrunner.nodes.base import MAIN_INPUT, handle

# Output handle taken when no condition matches
FALSE_HANDLE = "false"


class IfCondition(BaseModel):
    """One branch of an If node; its id doubles as the output handle id."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    expression: str

    @field_validator("expression")
    @classmethod
    def validate_expression(cls, v: str) -> str:
        error = check_expression(v)
        if error:
            raise ValueError(error)
        return v


class IfNodeData(NodeData):
    conditions: list[IfCondition] = Field(default_factory=list)

    @field_validator("conditions")
    @classmethod
    def validate_condition_ids(cls, v: list[IfCondition]) -> list[IfCondition]:
        seen: set[str] = set()
        for condition in v:
            if condition.id == FALSE_HANDLE:
                raise ValueError(f"condition id '{FALSE_HANDLE}' is reserved")
            if condition.id in seen:
                raise ValueError(f"duplicate condition id '{condition.id}'")
            seen.add(condition.id)
        return v


_JS_OPERATORS = [("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or ")]


def _code_to_expression(code: str) -> str:
    """Convert a v1 ``return <expr>;`` condition body into an expression."""
    expression = code.strip()
    expression = re.sub(r"^return\s+", "", expression)
    expression = expression.rstrip(";").strip()
    for old, new in _JS_OPERATORS:
        expression = expression.replace(old, new)
    expression = re.sub(r"!(?!=)", " not ", expression)
    return re.sub(r"\s+", " ", expression).strip() or "false"


def _if_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    conditions = []
    for condition in data.get("conditions", []):
        converted = {k: v for k, v in condition.items() if k != "code"}
        if "expression" not in converted:
            converted["expression"] = _code_to_expression(condition.get("code", ""))
        conditions.append(converted)
    return {**data, "conditions": conditions}


def _if_handles(data: IfNodeData) -> NodeHandles:
    outputs = [HandleSpec(id=c.id, label=c.expression) for c in data.conditions]
    outputs.append(HandleSpec(id=FALSE_HANDLE, label="Else"))
    return NodeHandles(outputs=outputs)


def _if_initial(id_factory: Callable[[], str]) -> dict[str, Any]:
    return {"conditions": [{"id": id_factory(), "expression": "true"}]}


async def execute_if(ctx: NodeContext) -> Branch:
    """Take the first condition that evaluates truthy, else the ``false`` handle."""
    value = ctx.main
    scope = {"input": value, "variables": dict(ctx.variables)}
    for condition in ctx.data.conditions:
        try:
            matched = bool(evaluate_expression(condition.expression, scope))
        except Exception as e:
            raise RuntimeError(f"condition '{condition.expression}' failed: {e}") from e
        if matched:
            return Branch(condition.id, value)
    return Branch(FALSE_HANDLE, value)


class ForEachNodeData(NodeData):
    pass


async def execute_for_each(ctx: NodeContext) -> Iterate:
    items = ctx.inputs.get("array")
    if not isinstance(items, (list, tuple)):
        raise TypeError(f"'array' input must be an array, got {type(items).__name__}")
    return Iterate(list(items))


class LoopSignalNodeData(NodeData):
    pass


async def execute_break(ctx: NodeContext) -> LoopBreak:
    return LoopBreak()


async def execute_continue(ctx: NodeContext) -> LoopContinue:
    return LoopContinue()


class EndNodeData(NodeData):
    pass


async def execute_end(ctx: NodeContext) -> FlowEnd:
    return FlowEnd()


DEFINITIONS = [
    NodeDefinition(
        type="ifNode",
        label="If",
        category="Logic",
        description="Routes execution to the first condition that holds, else to 'false'.",
        data_model=IfNodeData,
        execute=execute_if,
        current_version=2,
        migrations={1: NodeMigration(data=_if_v1_to_v2)},
        inputs=(MAIN_INPUT,),
        dynamic_handles=_if_handles,
        control=ControlKind.BRANCH,
        initial_data=_if_initial,
    ),
    NodeDefinition(
        type="forEachNode",
        label="For Each",
        category="Logic",
        description="Runs the nodes connected to 'item'/'index' once per array element.",
        data_model=ForEachNodeData,
        execute=execute_for_each,
        inputs=(
            MAIN_INPUT,
            handle("array", DataCategory.ARRAY, required=True),
            handle("next", label="Loop End"),
        ),
        outputs=(
            handle("item"),
            handle("index", DataCategory.NUMBER),
            handle("done", DataCategory.ARRAY),
            handle("iterations", DataCategory.NUMBER),
            handle("results", DataCategory.ARRAY),
        ),
        control=ControlKind.LOOP,
    ),
    NodeDefinition(
        type="breakLoopNode",
        label="Break Loop",
        category="Logic",
        description="Stops the nearest enclosing loop.",
        data_model=LoopSignalNodeData,
        execute=execute_break,
        inputs=(MAIN_INPUT,),
        control=ControlKind.LOOP_BREAK,
    ),
    NodeDefinition(
        type="continueLoopNode",
        label="Continue Loop",
        category="Logic",
        description="Skips the rest of the current iteration of the nearest enclosing loop.",
        data_model=LoopSignalNodeData,
        execute=execute_continue,
        inputs=(MAIN_INPUT,),
        control=ControlKind.LOOP_CONTINUE,
    ),
    NodeDefinition(
        type="endNode",
        label="End",
        category="Logic",
        description="Stops the whole run successfully.",
        data_model=EndNodeData,
        execute=execute_end,
        inputs=(MAIN_INPUT,),
        control=ControlKind.END,
    ),
]
