"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Visualizing workflow graphs as ASCII art and trees
- Rendering execution traces and run history as tables
"""

from nodeflow.cli_ui.graph_renderer import TerminalGraphRenderer, TraceTableRenderer

__all__ = [
    "TerminalGraphRenderer",
    "TraceTableRenderer",
]
