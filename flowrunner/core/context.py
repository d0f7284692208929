"""Per-node execution context and the sandboxed expression environment.

Conditions (``ifNode``) and text templates (``templateNode``) are evaluated
with a jinja2 SandboxedEnvironment. Expressions are checked for syntax when
node data is validated; evaluation only happens at run time.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jinja2 import StrictUndefined, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from flowrunner.core.notify import Notifier, safe_notify
from flowrunner.core.utils import resolve_input

if TYPE_CHECKING:
    from flowrunner.core.engine import CancelToken
    from flowrunner.core.flow_schema import NodeData
    from flowrunner.core.results import RunResult

# SECURITY: Use SandboxedEnvironment so flow authors cannot reach Python internals
# StrictUndefined raises errors on undefined names (catches typos)
_jinja_env = SandboxedEnvironment(
    undefined=StrictUndefined,
    autoescape=False,  # Plain text output, not HTML
    trim_blocks=True,
    lstrip_blocks=True,
)


def check_expression(expression: str) -> str | None:
    """Return a syntax error message for ``expression``, or None if it parses."""
    if not expression or not expression.strip():
        return "expression is empty"
    try:
        _jinja_env.compile_expression(expression)
    except TemplateSyntaxError as e:
        return f"syntax error: {e.message}"
    return None


def check_template(text: str) -> str | None:
    """Return a syntax error message for a template, or None if it parses."""
    try:
        _jinja_env.parse(text)
    except TemplateSyntaxError as e:
        return f"template syntax error at line {e.lineno}: {e.message}"
    return None


def evaluate_expression(expression: str, variables: dict[str, Any]) -> Any:
    """Evaluate a sandboxed expression against ``variables``.

    Raises whatever the expression raises (undefined names, type errors,
    sandbox violations); callers turn that into an execution failure.
    """
    compiled = _jinja_env.compile_expression(expression, undefined_to_none=False)
    return compiled(**variables)


def render_template(text: str, variables: dict[str, Any]) -> str:
    """Render a sandboxed jinja2 template."""
    return _jinja_env.from_string(text).render(**variables)


@dataclass
class NodeContext:
    """Everything an executor may read while running one node visit.

    ``inputs`` maps input handle id to its bound value. ``variables`` is the
    run-scoped flow variable table shared by every node of the run.
    """

    run_id: str
    node_id: str
    node_type: str
    data: NodeData
    inputs: dict[str | None, Any]
    variables: dict[str, Any]
    notifier: Notifier
    cancel_token: CancelToken
    initial_input: Any = None
    loop_path: tuple[tuple[str, int], ...] = ()
    # Sub-flow nesting level; 0 for a top-level run
    depth: int = 0
    # Runs the flow with the given path or id as a child of this run; set by the engine
    run_subflow: Callable[[str, Any], Awaitable[RunResult]] | None = None

    def get(self, key: str, default: Any = None) -> Any:
        """Connected input value for ``key``, else the node's static data value."""
        return resolve_input(self.inputs, self.data, key, default)

    @property
    def main(self) -> Any:
        return self.inputs.get("main")

    def notify(self, level: str, message: str, category: str = "user") -> None:
        """Send a notification; delivery problems never fail the node."""
        safe_notify(self.notifier, level, message, category)
