"""Terminal graph rendering for workflow visualization.

Provides ASCII art and tree-based visualization of workflow graphs and
execution traces using Rich.
"""

from collections import Counter
from typing import Any

import networkx as nx
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from nodeflow.core.graph_schema import (
    ConditionNode,
    Node,
    NodeType,
    WorkflowGraph,
    child_references,
)


class TerminalGraphRenderer:
    """
    Renders workflow graphs as ASCII art in the terminal.

    Features:
    - Reference-level layout (parents above the nodes they schedule)
    - Color-coded node types
    - Visit counts from an execution trace
    - Reference labels (then/else/body/path/next) in render_as_tree only

    NOTE: render_graph() shows levels but not exact connections.
    Use render_as_tree() for accurate structural visualization.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.TRIGGER: ("[>]", "green"),
        NodeType.CONDITION: ("[?]", "magenta"),
        NodeType.LOOP: ("[L]", "blue"),
        NodeType.PARALLEL: ("[P]", "green"),
        NodeType.API_CALL: ("[A]", "cyan"),
        NodeType.DATABASE_QUERY: ("[D]", "cyan"),
        NodeType.DATA_TRANSFORM: ("[T]", "yellow"),
        NodeType.FILTER: ("[F]", "yellow"),
        NodeType.DELAY: ("[Z]", "white"),
        NodeType.OUTPUT: ("[O]", "green"),
    }

    UNKNOWN_STYLE = ("[~]", "dim")

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _style(self, node: Node) -> tuple[str, str]:
        try:
            return self.NODE_STYLES[NodeType(node.type)]
        except ValueError:
            return self.UNKNOWN_STYLE

    def _node_text(self, node: Node, visits: Counter | None, failed_id: str | None) -> str:
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(node.label)
        symbol, color = self._style(node)

        if failed_id == node.id:
            return f"[red bold]{symbol} {safe_label} ✗[/]"
        if visits is not None:
            count = visits.get(node.id, 0)
            if count == 0:
                return f"[dim]{symbol} {safe_label}[/]"
            suffix = f" ✓ x{count}" if count > 1 else " ✓"
            return f"[{color}]{symbol} {safe_label}{suffix}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_graph(
        self,
        workflow: WorkflowGraph,
        trace: list[dict[str, Any]] | None = None,
    ) -> str:
        """
        Render workflow graph as ASCII.

        Args:
            workflow: The workflow graph to render
            trace: Optional execution log ({nodeId, type, timestamp} entries)

        Returns:
            ASCII representation of the graph
        """
        G = workflow._to_networkx()
        visits = Counter(e["nodeId"] for e in trace) if trace is not None else None

        try:
            levels = list(nx.topological_generations(G))
        except nx.NetworkXUnfeasible:
            # Has cycles - use simple layout
            levels = [[n.id for n in workflow.nodes]]

        lines = []
        for level_idx, level in enumerate(levels):
            level_nodes = []
            for node_id in level:
                node = workflow.get_node(node_id)
                if not node:
                    continue
                level_nodes.append(self._node_text(node, visits, None))

            lines.append("  |  ".join(level_nodes))

            if level_idx < len(levels) - 1:
                lines.append("  " + "  |  " * len(level_nodes))
                lines.append("  " + "  v  " * len(level_nodes))

        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        trace: list[dict[str, Any]] | None = None,
        failed_node_id: str | None = None,
        max_depth: int = 50,
        title: str = "Workflow",
    ) -> Tree:
        """
        Render workflow as a Rich Tree, one top-level branch per root node.

        Args:
            workflow: The workflow graph to render
            trace: Optional execution log; visited nodes are marked with counts
            failed_node_id: Node to mark as the failure point
            max_depth: Maximum tree depth to prevent exponential blow-up
        """
        tree = Tree(f"[bold]{escape(title)}[/] ({len(workflow.nodes)} nodes)")
        if not workflow.nodes:
            tree.add("[red]Error: workflow has no nodes[/]")
            return tree

        visits = Counter(e["nodeId"] for e in trace) if trace is not None else None
        for root in workflow.root_nodes():
            self._add_node_to_tree(
                tree, workflow, root, visits, failed_node_id, visited=set(), depth=0,
                max_depth=max_depth,
            )
        return tree

    def _reference_label(self, node: Node, ref: str) -> str:
        """Human label for a config reference path."""
        if ref == "nextNodeId":
            return "next"
        if ref == "elseNodeId":
            return "else"
        if ref == "loopNodeId":
            return "each item"
        if ref.startswith("paths["):
            return f"path {int(ref[6:ref.index(']')]) + 1}"
        if ref.startswith("conditions[") and isinstance(node, ConditionNode):
            condition = node.config.conditions[int(ref[11:ref.index("]")])]
            # SECURITY: Escape condition values to prevent Rich markup injection
            safe_value = escape(str(condition.value)[:50])
            return f"if {escape(str(condition.field))} {condition.operator or '?'} {safe_value}"
        return escape(ref)

    def _add_node_to_tree(
        self,
        parent: Tree,
        workflow: WorkflowGraph,
        node: Node,
        visits: Counter | None,
        failed_id: str | None,
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to tree with depth limiting."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return

        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, visits, failed_id))

        for ref, target in child_references(node):
            child = workflow.get_node(target)
            if not child:
                branch.add(f"[red]{escape(target)} (missing)[/]")
                continue
            edge_branch = branch.add(f"[dim]({self._reference_label(node, ref)})[/]")
            self._add_node_to_tree(
                edge_branch, workflow, child, visits, failed_id, visited.copy(),
                depth + 1, max_depth,
            )


class TraceTableRenderer:
    """Renders an execution log as a Rich table.

    SECURITY: All user-controlled strings are escaped to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_trace_table(
        self,
        trace: list[dict[str, Any]],
        workflow: WorkflowGraph | None = None,
        title: str = "Execution trace",
        failed: bool = False,
    ) -> Table:
        """One row per visit, in visitation order. The last row is marked when failed."""
        table = Table(title=escape(title))

        table.add_column("#", justify="right", style="dim")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Timestamp", style="dim")
        table.add_column("Status", justify="center")

        for idx, entry in enumerate(trace, start=1):
            node_id = entry.get("nodeId", "")
            node = workflow.get_node(node_id) if workflow else None
            label = node.label if node else node_id

            if failed and idx == len(trace):
                status_text = "[red]✗ Failed[/]"
            else:
                status_text = "[green]✓[/]"

            table.add_row(
                str(idx),
                escape(label),
                escape(str(entry.get("type", ""))),
                escape(str(entry.get("timestamp", ""))),
                status_text,
            )

        return table

    def render_history_table(self, runs: list[Any]) -> Table:
        """Summary of recorded runs (ExecutionRecord objects), newest first."""
        table = Table(title="Workflow runs")
        table.add_column("Run", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Started", no_wrap=True)
        table.add_column("Duration", justify="right")
        table.add_column("Steps", justify="right")
        table.add_column("Error", max_width=40)

        for run in runs:
            status_text = "[green]✓ completed[/]" if run.status == "completed" else "[red]✗ failed[/]"
            error = escape(run.error or "")
            if len(error) > 40:
                error = error[:37] + "..."
            table.add_row(
                escape(run.id),
                status_text,
                run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"{run.duration_ms:.0f}ms",
                str(len(run.execution_log)),
                error,
            )
        return table
