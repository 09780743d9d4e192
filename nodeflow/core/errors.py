"""Error taxonomy for workflow execution.

Every error raised by the engine derives from WorkflowError. Errors are fatal:
no node retries, and the first error unwinds the whole run.
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for all engine errors.

    execution_log holds the trace entries recorded before the failure. It is
    attached by the executor when the error unwinds a run and stays None for
    errors raised outside a run (e.g. during graph loading).
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.execution_log: list[dict[str, Any]] | None = None


class NodeNotFoundError(WorkflowError):
    """A referenced node id does not exist in the supplied node list."""

    def __init__(self, node_id: str, referenced_by: str | None = None):
        self.node_id = node_id
        self.referenced_by = referenced_by
        if referenced_by:
            message = f"Node {node_id} not found (referenced by '{referenced_by}')"
        else:
            message = f"Node {node_id} not found"
        super().__init__(message)


class EntityNotFoundError(WorkflowError):
    """A database_query node names an entity the store does not know."""

    def __init__(self, entity_name: str):
        self.entity_name = entity_name
        super().__init__(f"Entity {entity_name} not found")


class TransportFailureError(WorkflowError):
    """The HTTP transport could not complete the network call.

    Not raised for 4xx/5xx responses, which are normal node outcomes.
    """

    def __init__(self, method: str, url: str, reason: str):
        self.method = method
        self.url = url
        self.reason = reason
        super().__init__(f"{method} {url} failed: {reason}")


class GraphValidationError(WorkflowError):
    """The node list failed structural validation at load time."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid workflow graph: {'; '.join(errors)}")


class MalformedConfigError(GraphValidationError):
    """A node's config cannot be interpreted for its declared type."""


class ExpressionError(WorkflowError):
    """An arithmetic expression could not be parsed or evaluated."""


class TransformError(WorkflowError):
    """A transformation could not be applied to its input value."""

    def __init__(self, transform_type: str, reason: str):
        self.transform_type = transform_type
        super().__init__(f"Transform '{transform_type}' failed: {reason}")


class NodeExecutionError(WorkflowError):
    """A node handler failed with an exception outside this hierarchy.

    The original exception is kept as `__cause__`.
    """

    def __init__(self, node_id: str | None, cause: Exception):
        self.node_id = node_id
        where = f"Node {node_id}" if node_id else "Workflow"
        super().__init__(f"{where} failed: {type(cause).__name__}: {cause}")
