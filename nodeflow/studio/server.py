"""FastAPI backend for running workflows over HTTP.

This module provides:
- POST /api/execute: run a node list against an initial context
- POST /api/validate: errors and warnings for a node list, without running it
- Run history (GET /api/executions, GET /api/executions/{id})
- Health check

Architecture Notes:
- The server does no authentication; it is meant to sit behind an
  authenticating gateway.
- Collaborators (settings, database, entity store, history) are resolved
  through FastAPI dependencies, created lazily once per process.
- Failures answer {"error": message}. The partial trace of a failed run is
  not returned; it is stored in the run history instead.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nodeflow import __version__
from nodeflow.core.collaborators import EntityStore, HttpTransport
from nodeflow.core.config import CONFIG_DIR, EngineSettings, config_path, load_settings
from nodeflow.core.errors import (
    EntityNotFoundError,
    GraphValidationError,
    NodeNotFoundError,
    TransportFailureError,
    WorkflowError,
)
from nodeflow.core.graph_engine import execute_workflow
from nodeflow.core.graph_schema import check_nodes
from nodeflow.core.state import Database, ExecutionHistory, ExecutionRecord, SQLiteEntityStore

logger = logging.getLogger(__name__)

app = FastAPI(
    title="nodeflow API",
    description="Execute node-graph workflows",
    version=__version__,
)


def _get_allowed_origins() -> list[str]:
    """Build allowed origins list including the configured port."""
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    configured_port = os.environ.get("NODEFLOW_SERVER_PORT")
    if configured_port and configured_port not in ("3000", "5173", "8000"):
        origins.extend(
            [
                f"http://localhost:{configured_port}",
                f"http://127.0.0.1:{configured_port}",
            ]
        )

    return origins


ALLOWED_ORIGINS = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global instances - initialized lazily
_settings: EngineSettings | None = None
_db: Database | None = None
_project_root: Path | None = None


def _find_project_root() -> Path:
    """Find the project root by looking for a .nodeflow directory.

    Falls back to cwd if not found (the database will create it).
    """
    global _project_root
    if _project_root is not None:
        return _project_root

    current = Path.cwd()
    for parent in [current] + list(current.parents):
        if (parent / CONFIG_DIR).exists():
            _project_root = parent
            return parent

    _project_root = current
    return current


def get_settings() -> EngineSettings:
    global _settings
    if _settings is None:
        _settings = load_settings(config_path(_find_project_root()))
    return _settings


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        settings = get_settings()
        path = settings.database_path
        if not path.is_absolute():
            path = _find_project_root() / path
        _db = Database(path)
    return _db


def get_entity_store() -> EntityStore:
    return SQLiteEntityStore(get_db(), get_settings().entities)


def get_history() -> ExecutionHistory | None:
    if not get_settings().record_history:
        return None
    return ExecutionHistory(get_db())


def get_transport() -> HttpTransport | None:
    """None lets each run create (and close) its own HttpxTransport."""
    return None


# ========== API Models ==========


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(_CamelModel):
    """Request to execute a workflow. Missing nodes are reported as "No nodes to execute"."""

    nodes: list[dict[str, Any]] | None = None
    initial_context: dict[str, Any] | None = None


class ValidateRequest(_CamelModel):
    nodes: list[dict[str, Any]] = Field(default_factory=list)


class ValidateResponse(_CamelModel):
    valid: bool
    errors: list[str]
    warnings: list[str]


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies answer 400 {"error"} like every other failure."""
    details = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err["loc"] if part != "body")
        details.append(f"{where}: {err['msg']}" if where else err["msg"])
    return _error_response(400, f"Invalid request: {'; '.join(details)}")


def _status_for(error: WorkflowError) -> int:
    """HTTP status for an engine error."""
    if isinstance(error, (GraphValidationError, NodeNotFoundError)):
        return 400
    if isinstance(error, EntityNotFoundError):
        return 404
    if isinstance(error, TransportFailureError):
        return 502
    return 500


# ========== Execution Endpoints ==========


@app.post("/api/execute")
async def execute(
    request: ExecuteRequest,
    settings: EngineSettings = Depends(get_settings),
    entity_store: EntityStore = Depends(get_entity_store),
    history: ExecutionHistory | None = Depends(get_history),
    transport: HttpTransport | None = Depends(get_transport),
) -> Any:
    """Run a workflow and return {success, context, executionLog}."""
    if not request.nodes:
        return _error_response(400, "No nodes to execute")

    try:
        result = await execute_workflow(
            request.nodes,
            request.initial_context or {},
            transport=transport,
            entity_store=entity_store,
            settings=settings,
            history=history,
        )
    except WorkflowError as e:
        status_code = _status_for(e)
        if status_code >= 500:
            logger.error(f"Workflow execution failed: {e}")
        return _error_response(status_code, e.message)
    except Exception as e:
        logger.exception("Unexpected error during workflow execution")
        return _error_response(500, str(e) or type(e).__name__)

    return result.to_response()


@app.post("/api/validate")
def validate(request: ValidateRequest) -> ValidateResponse:
    """Check a node list without running it."""
    errors, warnings = check_nodes(request.nodes)
    return ValidateResponse(valid=not errors, errors=errors, warnings=warnings)


# ========== History Endpoints ==========


@app.get("/api/executions")
def list_executions(
    limit: int = 50,
    history: ExecutionHistory | None = Depends(get_history),
) -> list[ExecutionRecord]:
    """List recent runs, newest first."""
    if history is None:
        return []
    return history.list_runs(limit=max(1, min(limit, 500)))


@app.get("/api/executions/{execution_id}")
def get_execution(
    execution_id: str,
    history: ExecutionHistory | None = Depends(get_history),
) -> ExecutionRecord:
    """Get one recorded run, including the partial trace of a failed run."""
    record = history.get_run(execution_id) if history is not None else None
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return record


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
