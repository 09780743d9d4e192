"""Workflow graph interpreter.

Walks a validated WorkflowGraph, threading a variable context through the
nodes and recording every visit in an ExecutionLog.

Execution model:
- Root nodes (referenced by no other node) run in list order, starting with
  the entry node
- Control-flow nodes (condition, loop, parallel) schedule their children by
  recursing into execute()
- After a node's handler returns, its nextNodeId (if any) runs next
- Handlers never mutate their input context; they return a new mapping and
  the caller always continues from the returned one
- The first error unwinds the whole run (no retries, no compensation)
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from nodeflow.core.collaborators import EntityStore, HttpTransport, HttpxTransport, InMemoryEntityStore
from nodeflow.core.config import EngineSettings
from nodeflow.core.errors import (
    EntityNotFoundError,
    NodeExecutionError,
    NodeNotFoundError,
    WorkflowError,
)
from nodeflow.core.expressions import evaluate_condition, get_nested_value, interpolate
from nodeflow.core.graph_schema import (
    ApiCallNode,
    ConditionNode,
    DatabaseQueryNode,
    DataTransformNode,
    DelayNode,
    FilterNode,
    LoopNode,
    Node,
    OutputNode,
    ParallelNode,
    TriggerNode,
    UnknownNode,
    WorkflowGraph,
)
from nodeflow.core.trace import ExecutionLog
from nodeflow.core.transforms import apply_pipeline

if TYPE_CHECKING:
    from nodeflow.core.state import ExecutionHistory

logger = logging.getLogger(__name__)

# Engine-owned context keys. They share the user namespace.
LOOP_INDEX_KEY = "__loopIndex"
LAST_STATUS_CODE_KEY = "__lastStatusCode"
RESERVED_KEYS = frozenset({LOOP_INDEX_KEY, LAST_STATUS_CODE_KEY})

DEFAULT_RESPONSE_VARIABLE = "apiResponse"
DEFAULT_DB_VARIABLE = "dbResult"
DEFAULT_TRANSFORM_OUTPUT = "transformed"
DEFAULT_FILTER_OUTPUT = "filtered"


@dataclass
class ExecutionResult:
    """Outcome of a successful run."""

    success: bool
    context: dict[str, Any]
    execution_log: list[dict[str, Any]]
    run_id: str | None = None

    def to_response(self) -> dict[str, Any]:
        """Wire form: {success, context, executionLog}"""
        return {
            "success": self.success,
            "context": self.context,
            "executionLog": self.execution_log,
        }


class WorkflowExecutor:
    """
    Executes one workflow graph.

    Collaborators are injected: the HTTP transport for api_call nodes and
    the entity store for database_query nodes. When no transport is given,
    an HttpxTransport is created for the run and closed when it ends.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        transport: HttpTransport | None = None,
        entity_store: EntityStore | None = None,
        settings: EngineSettings | None = None,
    ):
        self.graph = graph
        self.settings = settings or EngineSettings()
        self.transport = transport
        self.entity_store = entity_store if entity_store is not None else InMemoryEntityStore()
        self.log = ExecutionLog()
        self._owned_transport: HttpxTransport | None = None

    # ========== Entry points ==========

    async def run(self, initial_context: dict[str, Any] | None = None) -> ExecutionResult:
        """
        Run the graph from its entry node.

        Raises:
            WorkflowError: Any node failure. The trace recorded up to the
                failure is attached as `execution_log`. Exceptions from
                outside the hierarchy arrive wrapped in NodeExecutionError.
        """
        context = dict(initial_context or {})
        self.log = ExecutionLog()

        collisions = sorted(RESERVED_KEYS & context.keys())
        if collisions:
            logger.warning(
                f"Initial context sets engine-reserved keys {collisions}; "
                f"nodes may overwrite them"
            )

        logger.info(f"Starting workflow run ({len(self.graph.nodes)} nodes)")
        try:
            for root in self.graph.root_nodes():
                context = await self.execute(root.id, context)
        except WorkflowError as e:
            e.execution_log = self.log.to_json()
            logger.error(f"Workflow run failed after {len(self.log)} steps: {e}")
            raise
        except Exception as e:
            node_ids = self.log.node_ids()
            error = NodeExecutionError(node_ids[-1] if node_ids else None, e)
            error.execution_log = self.log.to_json()
            logger.exception(f"Workflow run failed after {len(self.log)} steps: {error}")
            raise error from e
        finally:
            await self._close_owned_transport()

        logger.info(f"Workflow run completed ({len(self.log)} steps)")
        return ExecutionResult(success=True, context=context, execution_log=self.log.to_json())

    async def execute(self, node_id: str, context: dict[str, Any]) -> dict[str, Any]:
        """
        Execute one node (and its nextNodeId chain) against a context.

        The trace entry is appended before the handler runs, so a failing
        node still appears in the trace.

        Raises:
            NodeNotFoundError: node_id is not in the graph
        """
        node = self.graph.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        self.log.record(node.id, node.type)
        logger.debug(f"Executing node {node.id} ({node.type})")

        context = await self._dispatch(node, context)

        if node.next_node_id:
            context = await self.execute(node.next_node_id, context)
        return context

    async def _dispatch(self, node: Node, context: dict[str, Any]) -> dict[str, Any]:
        match node:
            case ConditionNode():
                return await self._execute_condition(node, context)
            case LoopNode():
                return await self._execute_loop(node, context)
            case ParallelNode():
                return await self._execute_parallel(node, context)
            case ApiCallNode():
                return await self._execute_api_call(node, context)
            case DatabaseQueryNode():
                return await self._execute_database_query(node, context)
            case DataTransformNode():
                return self._execute_data_transform(node, context)
            case FilterNode():
                return self._execute_filter(node, context)
            case DelayNode():
                return await self._execute_delay(node, context)
            case TriggerNode() | OutputNode():
                return context
            case UnknownNode():
                logger.warning(f"Node {node.id} has unknown type '{node.type}', skipping")
                return context
        raise TypeError(f"Unhandled node model: {type(node).__name__}")

    # ========== Control flow ==========

    async def _execute_condition(self, node: ConditionNode, context: dict[str, Any]) -> dict[str, Any]:
        """First matching condition wins; its branch (if any) runs."""
        cfg = node.config
        for condition in cfg.conditions:
            value = get_nested_value(context, condition.field) if condition.field else None
            if evaluate_condition(value, condition.operator, condition.value):
                if condition.then_node_id:
                    return await self.execute(condition.then_node_id, context)
                return context

        if cfg.else_node_id:
            return await self.execute(cfg.else_node_id, context)
        return context

    async def _execute_loop(self, node: LoopNode, context: dict[str, Any]) -> dict[str, Any]:
        """Sequential iterations, each continuing from the previous body's context."""
        cfg = node.config
        array = get_nested_value(context, cfg.array_field) if cfg.array_field else None
        if not isinstance(array, list):
            if array is not None:
                logger.warning(
                    f"Loop node {node.id}: '{cfg.array_field}' is {type(array).__name__}, "
                    f"not a list; running zero iterations"
                )
            return context

        max_iterations = cfg.max_iterations or self.settings.max_iterations
        iterations = min(len(array), max_iterations)
        if len(array) > max_iterations:
            logger.warning(
                f"Loop node {node.id}: {len(array)} items capped at {max_iterations} iterations"
            )

        current = context
        for index in range(iterations):
            current = {**current, LOOP_INDEX_KEY: index}
            if cfg.item_variable_name:
                current[cfg.item_variable_name] = array[index]
            if cfg.loop_node_id:
                current = await self.execute(cfg.loop_node_id, current)
        return current

    async def _execute_parallel(self, node: ParallelNode, context: dict[str, Any]) -> dict[str, Any]:
        """
        Run every path concurrently from its own snapshot of the context.

        Branch contexts are discarded; the node returns its input context.
        The first branch failure cancels the others and propagates.
        """
        targets = [path.node_id for path in node.config.paths if path.node_id]
        if not targets:
            return context

        tasks = [
            asyncio.create_task(self.execute(target, copy.deepcopy(context)))
            for target in targets
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            # Siblings must finish unwinding before the failure propagates
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return context

    async def _execute_delay(self, node: DelayNode, context: dict[str, Any]) -> dict[str, Any]:
        seconds = node.config.seconds
        if seconds > 0:
            logger.debug(f"Delay node {node.id}: sleeping {seconds}s")
            await asyncio.sleep(seconds)
        return context

    # ========== Side effects ==========

    def _get_transport(self) -> HttpTransport:
        if self.transport is not None:
            return self.transport
        if self._owned_transport is None:
            self._owned_transport = HttpxTransport(timeout=self.settings.http_timeout)
        return self._owned_transport

    async def _close_owned_transport(self) -> None:
        if self._owned_transport is not None:
            await self._owned_transport.close()
            self._owned_transport = None

    async def _execute_api_call(self, node: ApiCallNode, context: dict[str, Any]) -> dict[str, Any]:
        """One HTTP call. 4xx/5xx are normal outcomes; only transport failures raise."""
        cfg = node.config
        url = interpolate(cfg.url, context)
        headers = {**self.settings.default_headers, **cfg.headers}

        if cfg.body is None or cfg.body == "":
            body = None
        elif isinstance(cfg.body, str):
            body = cfg.body
        else:
            body = json.dumps(cfg.body)

        response = await self._get_transport().call(cfg.method, url, headers, body)
        if response.status >= 400:
            logger.info(f"API call node {node.id}: {cfg.method} {url} returned {response.status}")

        variable = cfg.response_variable_name or DEFAULT_RESPONSE_VARIABLE
        return {**context, variable: response.json_body, LAST_STATUS_CODE_KEY: response.status}

    async def _execute_database_query(
        self, node: DatabaseQueryNode, context: dict[str, Any]
    ) -> dict[str, Any]:
        cfg = node.config
        entity = self.entity_store.get_entity(cfg.entity_name)
        if entity is None:
            raise EntityNotFoundError(cfg.entity_name)

        criteria = cfg.filter or {}
        data = cfg.data or {}
        result: Any = None

        match cfg.operation:
            case "list":
                result = await entity.list()
            case "filter":
                result = await entity.filter(criteria)
            case "create":
                result = await entity.create(data)
            case "update" | "delete":
                record_id = criteria.get("id")
                if record_id is None or record_id == "":
                    logger.warning(
                        f"Database node {node.id}: {cfg.operation} without filter.id is a no-op"
                    )
                elif cfg.operation == "update":
                    result = await entity.update(str(record_id), data)
                else:
                    result = await entity.delete(str(record_id))
            case None:
                logger.warning(f"Database node {node.id}: no operation set, skipping")

        variable = cfg.variable_name or DEFAULT_DB_VARIABLE
        return {**context, variable: result}

    # ========== Pure data nodes ==========

    def _execute_data_transform(
        self, node: DataTransformNode, context: dict[str, Any]
    ) -> dict[str, Any]:
        cfg = node.config
        value = get_nested_value(context, cfg.source_variable) if cfg.source_variable else None
        steps = [(t.type, t.params) for t in cfg.transformations]
        result = apply_pipeline(value, steps, context)
        return {**context, cfg.output_variable or DEFAULT_TRANSFORM_OUTPUT: result}

    def _execute_filter(self, node: FilterNode, context: dict[str, Any]) -> dict[str, Any]:
        """Keep the items for which every condition holds."""
        cfg = node.config
        array = get_nested_value(context, cfg.array_variable) if cfg.array_variable else None
        if not isinstance(array, list):
            array = []

        kept = [
            item
            for item in array
            if all(
                evaluate_condition(get_nested_value(item, c.field), c.operator, c.value)
                for c in cfg.conditions
            )
        ]
        return {**context, cfg.output_variable or DEFAULT_FILTER_OUTPUT: kept}


def _utc_now() -> datetime:
    return datetime.now(UTC)


async def execute_workflow(
    nodes: list[dict[str, Any]],
    initial_context: dict[str, Any] | None = None,
    *,
    transport: HttpTransport | None = None,
    entity_store: EntityStore | None = None,
    settings: EngineSettings | None = None,
    history: ExecutionHistory | None = None,
) -> ExecutionResult:
    """
    Load, validate and run a workflow, recording the run when history is given.

    Load-time failures (NodeNotFoundError, GraphValidationError) raise before
    any node runs and are not recorded. Runtime failures are recorded with
    their partial trace and re-raised.
    """
    graph = WorkflowGraph.load(nodes)
    for warning in graph.graph_warnings():
        logger.warning(warning)

    executor = WorkflowExecutor(graph, transport, entity_store, settings)
    initial = dict(initial_context or {})
    started_at = _utc_now()

    try:
        result = await executor.run(initial)
    except WorkflowError as e:
        if history is not None:
            await asyncio.to_thread(
                history.record,
                started_at=started_at,
                completed_at=_utc_now(),
                node_count=len(graph.nodes),
                initial_context=initial,
                execution_log=e.execution_log or [],
                error=e,
            )
        raise

    if history is not None:
        record = await asyncio.to_thread(
            history.record,
            started_at=started_at,
            completed_at=_utc_now(),
            node_count=len(graph.nodes),
            initial_context=initial,
            execution_log=result.execution_log,
            final_context=result.context,
        )
        result.run_id = record.id
    return result
