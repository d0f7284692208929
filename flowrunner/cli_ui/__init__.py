"""CLI UI components for terminal-based flow visualization.

This package provides rich terminal rendering for:
- Flow graphs as trees, with branch handles and loop bodies marked
- Per-node status tables and execution reports for finished runs
"""

from flowrunner.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
