"""SQLite persistence: entity records and workflow run history.

Two concerns share one database file:
- entity_records: rows behind SQLiteEntityStore (database_query nodes)
- workflow_executions: one row per finished run, success or failure
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from nodeflow.core.collaborators import matches_criteria, new_record
from nodeflow.core.transforms import format_timestamp


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class Database:
    """SQLite database for entity records and execution history."""

    SCHEMA = """
    -- Registered entity collections
    CREATE TABLE IF NOT EXISTS entities (
        name TEXT PRIMARY KEY,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Entity records (one JSON document per row)
    CREATE TABLE IF NOT EXISTS entity_records (
        entity TEXT NOT NULL,
        id TEXT NOT NULL,
        data JSON NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (entity, id),
        FOREIGN KEY (entity) REFERENCES entities(name) ON DELETE CASCADE
    );

    -- Finished workflow runs
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        status TEXT CHECK(status IN ('completed', 'failed')),
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP NOT NULL,
        duration_ms REAL NOT NULL,
        node_count INTEGER NOT NULL,
        initial_context JSON,
        final_context JSON,
        execution_log JSON,
        error TEXT,
        error_type TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_entity_records_entity ON entity_records(entity);
    CREATE INDEX IF NOT EXISTS idx_executions_started ON workflow_executions(started_at);
    """

    def __init__(self, db_path: str | Path = ".nodeflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL allows readers and writers to operate simultaneously without blocking
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Entities ---

    def register_entity(self, name: str) -> None:
        with self._connect() as conn:
            conn.execute("INSERT OR IGNORE INTO entities (name) VALUES (?)", (name,))

    def entity_exists(self, name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM entities WHERE name = ?", (name,)).fetchone()
            return row is not None

    def list_entities(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM entities ORDER BY name").fetchall()
            return [row["name"] for row in rows]

    def get_records(self, entity: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM entity_records WHERE entity = ? ORDER BY rowid",
                (entity,),
            ).fetchall()
            return [json.loads(row["data"]) for row in rows]

    def get_record(self, entity: str, record_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM entity_records WHERE entity = ? AND id = ?",
                (entity, record_id),
            ).fetchone()
            return json.loads(row["data"]) if row else None

    def insert_record(self, entity: str, record: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO entity_records (entity, id, data) VALUES (?, ?, ?)",
                (entity, record["id"], json.dumps(record)),
            )

    def replace_record(self, entity: str, record: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE entity_records SET data = ?, updated_at = CURRENT_TIMESTAMP
                WHERE entity = ? AND id = ?
                """,
                (json.dumps(record), entity, record["id"]),
            )

    def delete_record(self, entity: str, record_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM entity_records WHERE entity = ? AND id = ?",
                (entity, record_id),
            )


class SQLiteEntity:
    """EntityHandle whose records live in the entity_records table.

    sqlite3 calls are blocking, so each operation runs in a worker thread.
    """

    def __init__(self, db: Database, name: str):
        self.db = db
        self.name = name

    async def list(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.db.get_records, self.name)

    async def filter(self, criteria: dict[str, Any]) -> list[dict[str, Any]]:
        records = await asyncio.to_thread(self.db.get_records, self.name)
        return [r for r in records if matches_criteria(r, criteria)]

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        record = new_record(data)
        await asyncio.to_thread(self.db.insert_record, self.name, record)
        return record

    async def update(self, record_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        record = await asyncio.to_thread(self.db.get_record, self.name, str(record_id))
        if record is None:
            return None
        record.update({k: v for k, v in data.items() if k != "id"})
        record["updated_date"] = format_timestamp(_utc_now())
        await asyncio.to_thread(self.db.replace_record, self.name, record)
        return record

    async def delete(self, record_id: str) -> dict[str, Any] | None:
        record = await asyncio.to_thread(self.db.get_record, self.name, str(record_id))
        if record is None:
            return None
        await asyncio.to_thread(self.db.delete_record, self.name, str(record_id))
        return record


class SQLiteEntityStore:
    """EntityStore over the project database. Only registered entities exist."""

    def __init__(self, db: Database, entities: list[str] | None = None):
        self.db = db
        for name in entities or []:
            self.db.register_entity(name)

    def get_entity(self, name: str) -> SQLiteEntity | None:
        if not self.db.entity_exists(name):
            return None
        return SQLiteEntity(self.db, name)

    @property
    def entity_names(self) -> list[str]:
        return self.db.list_entities()


class ExecutionRecord(BaseModel):
    """One finished run as stored in workflow_executions."""

    id: str
    status: Literal["completed", "failed"]
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    node_count: int
    initial_context: dict[str, Any] = Field(default_factory=dict)
    final_context: dict[str, Any] | None = None
    execution_log: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None


class ExecutionHistory:
    """Read and write finished runs."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        *,
        started_at: datetime,
        completed_at: datetime,
        node_count: int,
        initial_context: dict[str, Any],
        execution_log: list[dict[str, Any]],
        final_context: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> ExecutionRecord:
        """Persist a run. A non-None error marks it failed."""
        record = ExecutionRecord(
            id=f"run-{uuid4().hex[:12]}",
            status="failed" if error is not None else "completed",
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=(completed_at - started_at).total_seconds() * 1000,
            node_count=node_count,
            initial_context=initial_context,
            final_context=final_context,
            execution_log=execution_log,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
        )
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_executions
                (id, status, started_at, completed_at, duration_ms, node_count,
                 initial_context, final_context, execution_log, error, error_type)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.status,
                    record.started_at.isoformat(),
                    record.completed_at.isoformat(),
                    record.duration_ms,
                    record.node_count,
                    json.dumps(record.initial_context, default=str),
                    json.dumps(record.final_context, default=str)
                    if record.final_context is not None
                    else None,
                    json.dumps(record.execution_log),
                    record.error,
                    record.error_type,
                ),
            )
        return record

    def list_runs(self, limit: int = 20) -> list[ExecutionRecord]:
        """Most recent runs first."""
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_executions ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

    def get_run(self, run_id: str) -> ExecutionRecord | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_executions WHERE id = ?", (run_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def _row_to_record(self, row: sqlite3.Row) -> ExecutionRecord:
        """Convert database row to ExecutionRecord."""
        return ExecutionRecord(
            id=row["id"],
            status=row["status"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]),
            duration_ms=row["duration_ms"],
            node_count=row["node_count"],
            initial_context=json.loads(row["initial_context"]) if row["initial_context"] else {},
            final_context=json.loads(row["final_context"]) if row["final_context"] else None,
            execution_log=json.loads(row["execution_log"]) if row["execution_log"] else [],
            error=row["error"],
            error_type=row["error_type"],
        )
