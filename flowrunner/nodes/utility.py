"""Utility nodes: logging, notifications, sub-flows and visual-only annotations."""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from flowrunner.core.context import NodeContext
from flowrunner.core.exceptions import RunCancelledError, SubflowError
from flowrunner.core.flow_schema import DataCategory, NodeData
from flowrunner.core.migrations import NodeMigration, rename_input_handle
from flowrunner.core.registry import NodeDefinition
from flowrunner.core.results import RunStatus
from flowrunner.nodes.base import MAIN_INPUT, MAIN_OUTPUT, handle

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogNodeData(NodeData):
    level: Literal["debug", "info", "warning", "error"] = "info"
    prefix: str = ""


async def execute_log(ctx: NodeContext) -> dict[str, Any]:
    value = ctx.main
    logger.log(_LEVELS[ctx.data.level], f"{ctx.data.prefix}{value!r}")
    return {"main": value}


class NotificationNodeData(NodeData):
    message: str = ""
    level: Literal["info", "success", "warning", "error"] = "info"


async def execute_notification(ctx: NodeContext) -> None:
    message = ctx.get("message")
    if message is None or message == "":
        message = "" if ctx.main is None else str(ctx.main)
    ctx.notify(ctx.data.level, str(message), "user")


class RunFlowNodeData(NodeData):
    # Path of the flow file, or its id (file name without extension)
    flow_id: str = ""
    # JSON text or object handed to the sub-flow's triggers
    parameters: str | dict[str, Any] = "{}"


async def execute_run_flow(ctx: NodeContext) -> dict[str, Any]:
    """Run another flow and output the value its last node produced."""
    reference = ctx.get("flow_id")
    if not reference:
        raise ValueError("flow to run is required")
    parameters = ctx.get("parameters")
    if isinstance(parameters, str):
        try:
            parameters = json.loads(parameters or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON in parameters: {e}") from e
    if ctx.run_subflow is None:
        raise SubflowError("sub-flows cannot be run from this context")

    report = await ctx.run_subflow(str(reference), parameters)
    if report.status == RunStatus.CANCELLED:
        raise RunCancelledError(report.cancel_reason or "Run cancelled")
    if report.status == RunStatus.FAILED:
        raise SubflowError(f"sub-flow '{reference}' failed: {report.error}")
    return {"result": report.last_output}


class GroupNodeData(NodeData):
    label: str = "Group"
    color: str | None = None


class NoteNodeData(NodeData):
    text: str = ""


DEFINITIONS = [
    NodeDefinition(
        type="logNode",
        label="Log",
        category="Utility",
        description="Logs the incoming value and passes it through.",
        data_model=LogNodeData,
        execute=execute_log,
        current_version=2,
        # v1 named its single input 'value'
        migrations={1: NodeMigration(edges=rename_input_handle("value", "main"))},
        inputs=(MAIN_INPUT,),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="notificationNode",
        label="Notification",
        category="Utility",
        description="Shows a message to the user; falls back to the main input.",
        data_model=NotificationNodeData,
        execute=execute_notification,
        inputs=(MAIN_INPUT, handle("message", DataCategory.STRING)),
        outputs=(MAIN_OUTPUT,),
    ),
    NodeDefinition(
        type="runFlowNode",
        label="Run Flow",
        category="Utility",
        description="Runs another flow with the given parameters and outputs its last value.",
        data_model=RunFlowNodeData,
        execute=execute_run_flow,
        inputs=(handle("flow_id", DataCategory.STRING), handle("parameters", DataCategory.OBJECT)),
        outputs=(handle("result"),),
    ),
    NodeDefinition(
        type="groupNode",
        label="Group",
        category="Utility",
        description="Visual frame around related nodes. Never executed.",
        data_model=GroupNodeData,
        is_visual=True,
    ),
    NodeDefinition(
        type="noteNode",
        label="Note",
        category="Utility",
        description="Free-text annotation. Never executed.",
        data_model=NoteNodeData,
        is_visual=True,
    ),
]
