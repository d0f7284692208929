"""CLI entry point for flowrunner.

Commands:
- flowrunner validate: Check a flow file for schema and graph problems
- flowrunner visualize: Show a flow as a tree
- flowrunner run: Execute a flow
- flowrunner migrate: Upgrade node data to current schema versions
- flowrunner nodes: List available node types
- flowrunner history: Show recent runs
- flowrunner version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from flowrunner import __version__
from flowrunner.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowrunner.core.config import EngineConfig, load_config
from flowrunner.core.engine import FlowEngine
from flowrunner.core.exceptions import FlowRunnerError, GraphError, SchemaError
from flowrunner.core.flow_io import dump_flow, load_flow, save_flow
from flowrunner.core.flow_schema import SpecFlow
from flowrunner.core.history import RunHistory
from flowrunner.core.migrations import migrate_flow
from flowrunner.core.registry import default_registry
from flowrunner.core.resolver import GraphResolver

console = Console()

_NOTIFY_STYLES = {
    "info": "blue",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


class ConsoleNotifier:
    """Prints notifications to the terminal; node-level chatter only when verbose."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, level: str, message: str, category: str = "user") -> None:
        if category == "node" and level in ("info", "success") and not self.verbose:
            return
        style = _NOTIFY_STYLES.get(level, "white")
        console.print(f"[{style}]{escape(level.upper())}[/] {escape(message)}")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config_or_exit(config_path: str | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except FlowRunnerError as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        sys.exit(1)


def _load_flow_or_exit(flow_file: str) -> SpecFlow:
    try:
        return load_flow(flow_file)
    except FlowRunnerError as e:
        console.print(f"[red]Cannot load flow:[/] {escape(str(e))}")
        sys.exit(1)


def _print_graph_error(error: GraphError) -> None:
    console.print("[red bold]Validation errors:[/]")
    for issue in error.issues:
        # SECURITY: escape messages that may contain user data
        console.print(f"  [red]• {escape(str(issue))}[/]")


def _parse_json_option(value: str | None, name: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        # Plain strings are accepted as-is
        if name == "--input":
            return value
        console.print(f"[red]{name} must be valid JSON[/]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Engine config file (YAML)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Flowrunner - typed node-graph flow execution engine.

    Loads flows (JSON or YAML), migrates node data, validates handle wiring
    and runs the graph with branch, loop and end semantics.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def validate(flow_file: str) -> None:
    """Check a flow for schema and graph problems."""
    flow = _load_flow_or_exit(flow_file)
    issues = GraphResolver(default_registry()).validate(flow)
    if issues:
        console.print("[red bold]Validation errors:[/]")
        for issue in issues:
            console.print(f"  [red]• {escape(str(issue))}[/]")
        sys.exit(1)
    console.print(f"[green]✓ Flow is valid[/] ({len(flow.nodes)} nodes, {len(flow.edges)} edges)")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def visualize(flow_file: str) -> None:
    """Visualize a flow in the terminal."""
    flow = _load_flow_or_exit(flow_file)
    registry = default_registry()
    renderer = TerminalGraphRenderer(registry, console)
    title = (flow.model_extra or {}).get("name") or Path(flow_file).name
    console.print(renderer.render_as_tree(flow, title=str(title)))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(flow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(flow.edges)}")

    resolver = GraphResolver(registry)
    issues = resolver.validate(flow)
    if issues:
        console.print("\n[red bold]Validation Errors:[/]")
        for issue in issues:
            console.print(f"  [red]• {escape(str(issue))}[/]")
        return

    plan = resolver.resolve(flow)
    for loop_id, body in plan.loop_bodies.items():
        members = ", ".join(escape(n) for n in sorted(body, key=lambda n: plan.nodes[n].index))
        console.print(f"[bold]Loop {escape(loop_id)} body:[/] {members or '(empty)'}")
    console.print("\n[green]✓ Flow is valid[/]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--input", "input_json", help="Initial input (JSON, or a plain string)")
@click.option("--from-node", "start_node_id", help="Run only this node and its descendants")
@click.option("--to-node", "end_node_id", help="Run only this node and its ancestors")
@click.option("--seed", "seed_json", help="JSON object of node id -> outputs for nodes outside the run")
@click.option("--timeout", type=float, help="Per-node timeout in seconds")
@click.option("--report", is_flag=True, help="Show every node visit")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    flow_file: str,
    input_json: str | None,
    start_node_id: str | None,
    end_node_id: str | None,
    seed_json: str | None,
    timeout: float | None,
    report: bool,
    as_json: bool,
) -> None:
    """Execute a flow."""
    config = _load_config_or_exit(ctx.obj.get("config_path"))
    flow = _load_flow_or_exit(flow_file)
    initial_input = _parse_json_option(input_json, "--input")
    seed_outputs = _parse_json_option(seed_json, "--seed")
    if seed_outputs is not None and not isinstance(seed_outputs, dict):
        console.print("[red]--seed must be a JSON object[/]")
        sys.exit(1)

    if config.flows_dir is None:
        # Sub-flows sit next to the flow that runs them unless configured otherwise
        config = config.model_copy(update={"flows_dir": Path(flow_file).resolve().parent})

    history = RunHistory(config.history_path, config.history_size) if config.history_path else None
    engine = FlowEngine(
        config=config,
        notifier=ConsoleNotifier(verbose=ctx.obj.get("verbose", False)),
        history=history,
    )

    try:
        result = asyncio.run(
            engine.run(
                flow,
                initial_input,
                start_node_id=start_node_id,
                end_node_id=end_node_id,
                seed_outputs=seed_outputs,
                node_timeout=timeout,
            )
        )
    except GraphError as e:
        _print_graph_error(e)
        sys.exit(1)
    except SchemaError as e:
        console.print(f"[red]Schema error:[/] {escape(str(e))}")
        sys.exit(1)

    if as_json:
        click.echo(result.model_dump_json(indent=2, exclude={"error"}))
    else:
        renderer = StatusTableRenderer(console)
        console.print(renderer.render_status_table(flow, result))
        if report:
            console.print(renderer.render_report(result))

    if result.succeeded:
        suffix = f" (ended at {escape(result.end_node_id)})" if result.ended_early else ""
        console.print(f"[green]Flow completed[/]{suffix}")
    else:
        reason = result.error or result.cancel_reason
        console.print(f"[red]Flow {result.status.value}:[/] {escape(str(reason))}")
        sys.exit(1)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write here instead of stdout")
@click.option("--in-place", is_flag=True, help="Overwrite the input file")
def migrate(flow_file: str, output: str | None, in_place: bool) -> None:
    """Upgrade every node's data to its current schema version."""
    flow = _load_flow_or_exit(flow_file)
    try:
        migrated = migrate_flow(flow, default_registry())
    except SchemaError as e:
        console.print(f"[red]Migration failed:[/] {escape(str(e))}")
        sys.exit(1)

    target = flow_file if in_place else output
    if target:
        path = save_flow(migrated, target)
        console.print(f"[green]Migrated flow written to {escape(str(path))}[/]")
    else:
        fmt = "yaml" if Path(flow_file).suffix.lower() in (".yaml", ".yml") else "json"
        click.echo(dump_flow(migrated, fmt), nl=False)


@main.command()
@click.option("--category", "-c", help="Only show this category")
def nodes(category: str | None) -> None:
    """List available node types."""
    registry = default_registry()
    table = Table(title="Node Types")
    table.add_column("Type", style="cyan")
    table.add_column("Label", style="white")
    table.add_column("Category", style="magenta")
    table.add_column("Version", justify="right")
    table.add_column("Description", style="dim")

    for group, definitions in sorted(registry.by_category().items()):
        if category and group.lower() != category.lower():
            continue
        for definition in definitions:
            table.add_row(
                definition.type,
                definition.label,
                group,
                str(definition.current_version),
                definition.description,
            )
    console.print(table)


@main.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of runs to show")
@click.option("--clear", is_flag=True, help="Delete all stored runs")
@click.pass_context
def history(ctx: click.Context, limit: int, clear: bool) -> None:
    """Show recent runs."""
    config = _load_config_or_exit(ctx.obj.get("config_path"))
    if config.history_path is None:
        console.print("[yellow]Run history is disabled (set history_path in the config)[/]")
        return
    store = RunHistory(config.history_path, config.history_size)
    if clear:
        removed = store.clear()
        console.print(f"[green]Removed {removed} run(s)[/]")
        return

    entries = store.recent(limit)
    if not entries:
        console.print("[dim]No runs recorded yet[/]")
        return

    table = Table(title="Recent Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Flow")
    table.add_column("Status", justify="center")
    table.add_column("Started")
    table.add_column("Nodes", justify="right")
    table.add_column("Error", style="red", max_width=50)
    for entry in entries:
        status = entry.status + (" (ended early)" if entry.ended_early else "")
        color = "green" if entry.status == "completed" else "red"
        table.add_row(
            escape(entry.run_id[:8]),
            escape(entry.flow_name or "-"),
            f"[{color}]{escape(status)}[/]",
            entry.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.executed),
            escape(entry.error or ""),
        )
    console.print(table)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Flowrunner v{__version__}")
    console.print("Typed node-graph flow execution engine")


if __name__ == "__main__":
    main()
