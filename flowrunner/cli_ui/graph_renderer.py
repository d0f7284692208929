"""Terminal graph rendering for flow visualization.

Provides tree-based visualization of flows and run status tables using Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowrunner.core.flow_schema import NodeStatus, SpecEdge, SpecFlow, SpecNode
from flowrunner.core.registry import ControlKind, NodeRegistry
from flowrunner.core.results import RunResult


def _node_label(node: SpecNode) -> str:
    label = node.data.get("label") if isinstance(node.data, dict) else None
    return str(label) if label else node.id


class TerminalGraphRenderer:
    """
    Renders flows as Rich trees in the terminal.

    Features:
    - Color-coded control kinds
    - Status indicators
    - Edge labels for named output handles (branch conditions, loop body)

    Roots are the nodes without incoming edges, in authored order. Nodes
    reachable along several paths appear once per path.
    """

    # Control kind symbols and colors
    NODE_STYLES = {
        ControlKind.NONE: ("[ ]", "cyan"),
        ControlKind.BRANCH: ("[?]", "magenta"),
        ControlKind.LOOP: ("[↻]", "blue"),
        ControlKind.LOOP_BREAK: ("[B]", "yellow"),
        ControlKind.LOOP_CONTINUE: ("[C]", "yellow"),
        ControlKind.END: ("[E]", "red"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    # Handles that carry no information worth labelling
    UNLABELLED_HANDLES = {None, "main"}

    @staticmethod
    def _normalize_status(status: NodeStatus | str | None) -> str:
        """Normalize status to string for consistent lookup."""
        if isinstance(status, NodeStatus):
            return status.value
        return str(status) if status else "pending"

    def __init__(self, registry: NodeRegistry, console: Console | None = None):
        self.registry = registry
        self.console = console or Console()

    def _build_edge_map(self, flow: SpecFlow) -> dict[str, list[SpecEdge]]:
        """Outgoing edges by source node id."""
        edge_map: dict[str, list[SpecEdge]] = {n.id: [] for n in flow.nodes}
        for edge in flow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def _style(self, node: SpecNode) -> tuple[str, str]:
        definition = self.registry.get(node.type)
        if definition is None:
            return ("[!]", "red")
        if definition.is_visual:
            return ("[~]", "dim")
        return self.NODE_STYLES.get(definition.control, ("[ ]", "white"))

    def render_as_tree(
        self,
        flow: SpecFlow,
        title: str = "Flow",
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render a flow as a Rich Tree (hierarchical view).

        Args:
            flow: The flow to render
            title: Tree title
            statuses: Optional dict of node_id -> status
            max_depth: Maximum tree depth to prevent exponential blow-up
        """
        tree = Tree(f"[bold]{escape(title)}[/]")
        node_map = flow.node_map()
        edge_map = self._build_edge_map(flow)
        targets = {e.target for e in flow.edges}

        roots = [n for n in flow.nodes if n.id not in targets and node_map[n.id] is n]
        if not roots:
            tree.add("[red]No start nodes (every node has an incoming edge)[/]")
            return tree

        for root in roots:
            self._add_node_to_tree(tree, root, statuses, node_map, edge_map, visited=set(), depth=0, max_depth=max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: SpecNode,
        statuses: dict[str, Any] | None,
        node_map: dict[str, SpecNode],
        edge_map: dict[str, list[SpecEdge]],
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to tree with depth limiting."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(_node_label(node))
        safe_id = escape(node.id)

        if node.id in visited:
            parent.add(f"[dim]↩ {safe_id} (loop end)[/]")
            return
        visited.add(node.id)

        symbol, color = self._style(node)
        status = self._normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            indicator = {"completed": " ✓", "failed": " ✗", "running": " ⟳"}.get(status, "")
            node_text = f"[{status_color}]{symbol} {safe_label}{indicator}[/]"
        else:
            node_text = f"[{color}]{symbol} {safe_label}[/]"
        if safe_label != safe_id:
            node_text += f" [dim]{safe_id} ({escape(node.type)})[/]"
        else:
            node_text += f" [dim]({escape(node.type)})[/]"

        branch = parent.add(node_text)

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                branch.add(f"[red]✗ missing node {escape(edge.target)}[/]")
                continue
            holder = branch
            if edge.source_handle not in self.UNLABELLED_HANDLES:
                holder = branch.add(f"[dim]({escape(str(edge.source_handle))})[/]")
            self._add_node_to_tree(
                holder, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders node execution status as Rich tables.

    SECURITY: All user-controlled strings (node labels, outputs, run ids) are escaped
    to prevent Rich markup injection.
    """

    STATUS_TEXT = {
        "completed": "[green]✓ Completed[/]",
        "failed": "[red]✗ Failed[/]",
        "running": "[blue]⟳ Running[/]",
        "skipped": "[dim]⊘ Skipped[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _truncate(value: Any, width: int = 40) -> str:
        text = escape("" if value is None else str(value))
        return text if len(text) <= width else text[: width - 3] + "..."

    def render_status_table(self, flow: SpecFlow, result: RunResult) -> Table:
        """Final status and outputs of every node of the flow."""
        table = Table(title=f"Run: {escape(result.run_id[:8])}... ({result.status.value})")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for node in flow.nodes:
            status = TerminalGraphRenderer._normalize_status(result.statuses.get(node.id))
            table.add_row(
                escape(_node_label(node)),
                escape(node.type),
                self.STATUS_TEXT.get(status, "[dim]○ Pending[/]"),
                self._truncate(result.outputs.get(node.id)),
            )
        return table

    def render_report(self, result: RunResult) -> Table:
        """Every node visit in execution order, including loop iterations."""
        table = Table(title="Execution report")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Node", style="cyan")
        table.add_column("Iteration", style="blue")
        table.add_column("Status", justify="center")
        table.add_column("Signal", style="magenta")
        table.add_column("Output", max_width=40)
        table.add_column("ms", justify="right", style="dim")

        for i, record in enumerate(result.executed_nodes, start=1):
            iteration = " / ".join(f"{escape(loop_id)}[{index}]" for loop_id, index in record.loop_path)
            status = record.status.value
            output = record.error if record.error else record.output
            table.add_row(
                str(i),
                escape(record.node_id),
                iteration,
                self.STATUS_TEXT.get(status, status),
                escape(record.signal or ""),
                self._truncate(output),
                f"{record.duration_ms:.1f}",
            )
        return table
