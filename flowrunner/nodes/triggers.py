"""Trigger nodes: where a run's data enters the flow."""

from __future__ import annotations

import json
from typing import Any

from pydantic import field_validator

from flowrunner.core.context import NodeContext
from flowrunner.core.flow_schema import NodeData
from flowrunner.core.registry import NodeDefinition
from flowrunner.nodes.base import MAIN_OUTPUT


class TriggerNodeData(NodeData):
    pass


async def execute_trigger(ctx: NodeContext) -> dict[str, Any]:
    return {"main": ctx.initial_input}


class ManualTriggerNodeData(NodeData):
    # JSON text parsed on every run
    payload: str = "{}"

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: str) -> str:
        try:
            json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"payload is not valid JSON: {e}")
        return v


async def execute_manual_trigger(ctx: NodeContext) -> dict[str, Any]:
    return {"main": json.loads(ctx.data.payload)}


DEFINITIONS = [
    NodeDefinition(
        type="triggerNode",
        label="Trigger",
        category="Triggers",
        description="Emits the run's initial input.",
        data_model=TriggerNodeData,
        execute=execute_trigger,
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="manualTriggerNode",
        label="Manual Trigger",
        category="Triggers",
        description="Emits a fixed JSON payload.",
        data_model=ManualTriggerNodeData,
        execute=execute_manual_trigger,
        outputs=(MAIN_OUTPUT,),
    ),
]
