"""CLI entry point for the nodeflow engine.

Commands:
- nodeflow init: Initialize project for nodeflow
- nodeflow validate: Check a workflow file without running it
- nodeflow visualize: Show a workflow graph in the terminal
- nodeflow run: Execute a workflow file
- nodeflow history: Show recorded runs
- nodeflow serve: Start the HTTP API
- nodeflow version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from nodeflow.cli_ui.graph_renderer import TerminalGraphRenderer, TraceTableRenderer
from nodeflow.core.config import (
    CONFIG_DIR,
    CONFIG_FILENAME,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    EngineSettings,
    config_path,
    load_settings,
)
from nodeflow.core.errors import WorkflowError
from nodeflow.core.graph_engine import execute_workflow
from nodeflow.core.graph_schema import WorkflowGraph, check_nodes
from nodeflow.core.state import Database, ExecutionHistory, SQLiteEntityStore

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


class WorkflowFileError(Exception):
    """Workflow file cannot be read or has the wrong shape."""


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_settings_or_exit() -> EngineSettings:
    try:
        return load_settings(config_path(get_repo_path()))
    except ConfigError as e:
        err_console.print(f"[red]Config error:[/red] {escape(str(e))}")
        sys.exit(1)


def load_workflow_file(path: str) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Read a YAML or JSON workflow file.

    The file holds either a bare node list or {nodes, initialContext}.

    Returns:
        Tuple of (nodes, initial_context)
    """
    try:
        with open(path) as f:
            if path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise WorkflowFileError(f"Cannot parse '{path}': {e}") from e

    if isinstance(data, list):
        return data, {}
    if isinstance(data, dict) and isinstance(data.get("nodes"), list):
        initial = data.get("initialContext") or {}
        if not isinstance(initial, dict):
            raise WorkflowFileError("initialContext must be a mapping")
        return data["nodes"], initial
    raise WorkflowFileError(
        f"Expected a node list or a mapping with 'nodes' in '{path}', "
        f"got {type(data).__name__}"
    )


def _load_nodes_or_exit(path: str) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    try:
        return load_workflow_file(path)
    except WorkflowFileError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (default: from config.yaml or INFO)",
)
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """nodeflow - node-graph workflow execution engine.

    Runs workflows made of typed nodes (condition, loop, parallel,
    api_call, database_query, data_transform, filter, delay) and prints
    the final context plus the execution trace.
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _configure_logging(ctx: click.Context, settings: EngineSettings) -> None:
    _setup_logging(ctx.obj.get("log_level") or settings.log_level)


@main.command()
def init() -> None:
    """Initialize project for nodeflow."""
    nodeflow_dir = get_repo_path() / CONFIG_DIR

    if (nodeflow_dir / CONFIG_FILENAME).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    nodeflow_dir.mkdir(parents=True, exist_ok=True)
    (nodeflow_dir / CONFIG_FILENAME).write_text(DEFAULT_CONFIG_YAML)

    Database(nodeflow_dir / "state.db")

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {nodeflow_dir}\n"
            "- config.yaml: Engine configuration\n"
            "- state.db: Entity records and run history",
            title="nodeflow Initialized",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file: str) -> None:
    """Check a workflow file for errors without running it."""
    nodes, _ = _load_nodes_or_exit(workflow_file)
    errors, warnings = check_nodes(nodes)

    for warning in warnings:
        console.print(f"[yellow]• {escape(warning)}[/]")

    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)

    console.print(f"[green]✓ Workflow is valid[/green] ({len(nodes)} nodes)")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--layout",
    type=click.Choice(["tree", "levels"]),
    default="tree",
    help="tree: one branch per reference; levels: nodes grouped by depth",
)
def visualize(workflow_file: str, layout: str) -> None:
    """Visualize a workflow graph in the terminal."""
    nodes, _ = _load_nodes_or_exit(workflow_file)
    errors, warnings = check_nodes(nodes)

    workflow = None
    if nodes:
        try:
            workflow = WorkflowGraph(nodes=nodes)
        except pydantic.ValidationError:
            pass  # Schema errors are listed below

    if workflow is not None:
        renderer = TerminalGraphRenderer(console)
        if layout == "levels":
            console.print(renderer.render_graph(workflow))
        else:
            console.print(renderer.render_as_tree(workflow, title=Path(workflow_file).stem))
        console.print()
        console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
        console.print(f"[bold]Entry:[/] {escape(workflow.entry_node.id)}")
        roots = ", ".join(escape(n.id) for n in workflow.root_nodes())
        console.print(f"[bold]Main path:[/] {roots}")
        ends = ", ".join(escape(node_id) for node_id in sorted(workflow.get_terminal_nodes()))
        console.print(f"[bold]Terminal nodes:[/] {ends}")

    for warning in warnings:
        console.print(f"[yellow]• {escape(warning)}[/]")

    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--context", "context_json", help="Initial context as a JSON object")
@click.option(
    "--context-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Initial context from a JSON or YAML file",
)
@click.option("--timeout", type=float, default=None, help="Abort the run after N seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the raw response as JSON")
@click.option("--no-history", is_flag=True, help="Do not record this run")
@click.pass_context
def run(
    ctx: click.Context,
    workflow_file: str,
    context_json: str | None,
    context_file: str | None,
    timeout: float | None,
    as_json: bool,
    no_history: bool,
) -> None:
    """Execute a workflow file.

    WORKFLOW_FILE is a YAML or JSON file holding a node list, or a mapping
    with 'nodes' and an optional 'initialContext'.

    Example:
        nodeflow run workflows/score.yaml --context '{"score": 75}'
    """
    settings = _load_settings_or_exit()
    _configure_logging(ctx, settings)

    nodes, initial_context = _load_nodes_or_exit(workflow_file)

    try:
        if context_file:
            with open(context_file) as f:
                extra = yaml.safe_load(f) or {}
            if not isinstance(extra, dict):
                raise ValueError(f"{context_file} must contain a mapping")
            initial_context = {**initial_context, **extra}
        if context_json:
            extra = json.loads(context_json)
            if not isinstance(extra, dict):
                raise ValueError("--context must be a JSON object")
            initial_context = {**initial_context, **extra}
    except (ValueError, yaml.YAMLError) as e:
        err_console.print(f"[red]Invalid context:[/red] {escape(str(e))}")
        sys.exit(1)

    db = Database(settings.database_path)
    entity_store = SQLiteEntityStore(db, settings.entities)
    history = ExecutionHistory(db) if settings.record_history and not no_history else None

    async def _run():
        coro = execute_workflow(
            nodes,
            initial_context,
            entity_store=entity_store,
            settings=settings,
            history=history,
        )
        if timeout:
            return await asyncio.wait_for(coro, timeout=timeout)
        return await coro

    try:
        result = asyncio.run(_run())
    except WorkflowError as e:
        if as_json:
            click.echo(json.dumps({"error": e.message}))
        else:
            err_console.print(f"[red]Workflow failed:[/red] {escape(e.message)}")
            if e.execution_log:
                table = TraceTableRenderer(err_console).render_trace_table(
                    e.execution_log, title="Partial trace", failed=True
                )
                err_console.print(table)
        sys.exit(1)
    except TimeoutError:
        message = f"Workflow timed out after {timeout}s"
        if as_json:
            click.echo(json.dumps({"error": message}))
        else:
            err_console.print(f"[red]{message}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_response(), indent=2, default=str))
        return

    graph = WorkflowGraph(nodes=nodes)
    console.print(TraceTableRenderer(console).render_trace_table(result.execution_log, graph))
    console.print(
        Panel(JSON(json.dumps(result.context, default=str)), title="Final context")
    )
    if result.run_id:
        console.print(f"[dim]Recorded as {result.run_id}[/dim]")
    console.print("[green]Workflow completed successfully[/green]")


@main.command()
@click.argument("run_id", required=False)
@click.option("--limit", "-n", type=int, default=20, help="Number of runs to list")
def history(run_id: str | None, limit: int) -> None:
    """Show recorded runs, or one run in detail."""
    settings = _load_settings_or_exit()
    if not settings.database_path.exists():
        console.print("[yellow]No nodeflow database found. Run 'nodeflow init' first.[/yellow]")
        return

    store = ExecutionHistory(Database(settings.database_path))
    renderer = TraceTableRenderer(console)

    if run_id is None:
        runs = store.list_runs(limit=limit)
        if not runs:
            console.print("[dim]No runs recorded yet[/dim]")
            return
        console.print(renderer.render_history_table(runs))
        return

    record = store.get_run(run_id)
    if record is None:
        console.print(f"[red]Run '{escape(run_id)}' not found[/]")
        sys.exit(1)

    status_color = "green" if record.status == "completed" else "red"
    safe_error = escape(record.error) if record.error else "-"
    console.print(
        Panel(
            f"[bold]Status:[/] [{status_color}]{record.status}[/]\n"
            f"[bold]Started:[/] {record.started_at.isoformat()}\n"
            f"[bold]Duration:[/] {record.duration_ms:.0f}ms\n"
            f"[bold]Error:[/] {safe_error}",
            title=f"Run: {escape(record.id)}",
        )
    )
    console.print(
        renderer.render_trace_table(record.execution_log, failed=record.status == "failed")
    )
    if record.final_context is not None:
        console.print(
            Panel(JSON(json.dumps(record.final_context, default=str)), title="Final context")
        )


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8000, help="Port to listen on")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the HTTP API (POST /api/execute)."""
    import uvicorn

    settings = _load_settings_or_exit()
    _configure_logging(ctx, settings)

    os.environ["NODEFLOW_SERVER_PORT"] = str(port)
    console.print(f"[blue]Serving nodeflow API on http://{host}:{port}[/blue]")
    uvicorn.run(
        "nodeflow.studio.server:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


@main.command()
def version() -> None:
    """Show version information."""
    from nodeflow import __version__

    console.print(f"nodeflow v{__version__}")
    console.print("Node-graph workflow execution engine")


if __name__ == "__main__":
    main()
