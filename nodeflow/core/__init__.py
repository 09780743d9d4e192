"""Core modules for the nodeflow engine."""

from nodeflow.core.collaborators import HttpResponse, HttpxTransport, InMemoryEntityStore
from nodeflow.core.config import EngineSettings, load_settings
from nodeflow.core.errors import (
    EntityNotFoundError,
    GraphValidationError,
    MalformedConfigError,
    NodeExecutionError,
    NodeNotFoundError,
    TransportFailureError,
    WorkflowError,
)
from nodeflow.core.graph_engine import (
    LAST_STATUS_CODE_KEY,
    LOOP_INDEX_KEY,
    ExecutionResult,
    WorkflowExecutor,
    execute_workflow,
)
from nodeflow.core.graph_schema import NodeType, WorkflowGraph
from nodeflow.core.state import Database, ExecutionHistory, SQLiteEntityStore

__all__ = [
    "Database",
    "EngineSettings",
    "EntityNotFoundError",
    "ExecutionHistory",
    "ExecutionResult",
    "GraphValidationError",
    "HttpResponse",
    "HttpxTransport",
    "InMemoryEntityStore",
    "LAST_STATUS_CODE_KEY",
    "LOOP_INDEX_KEY",
    "MalformedConfigError",
    "NodeExecutionError",
    "NodeNotFoundError",
    "NodeType",
    "SQLiteEntityStore",
    "TransportFailureError",
    "WorkflowError",
    "WorkflowExecutor",
    "WorkflowGraph",
    "execute_workflow",
    "load_settings",
]
