"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import ConcurrentModification, DuplicateExecution, ExecutionNotFound
from .codec import (
    EXECUTION_COLUMNS,
    WORKFLOW_COLUMNS,
    dump_log,
    dump_steps,
    execution_from_row,
    iso,
    workflow_from_row,
)
from .models import ExecutionStatus, TriggerKind, WorkflowDefinition, WorkflowExecution
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    The connection runs in autocommit mode; multi-statement operations open an
    explicit ``BEGIN IMMEDIATE`` transaction so concurrent processes sharing the
    database file serialize on the write lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                active INTEGER NOT NULL,
                trigger_kind TEXT NOT NULL,
                trigger_config TEXT NOT NULL,
                steps TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step INTEGER NOT NULL,
                step_attempts INTEGER NOT NULL DEFAULT 0,
                next_step_at TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                error TEXT,
                log TEXT NOT NULL,
                trigger_data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                locked_until TEXT
            )
            """
        )
        # One RUNNING execution per (workflow, entity)
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_executions_running
            ON executions (workflow_id, entity_id) WHERE status = 'RUNNING'
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_executions_due ON executions (status, next_step_at)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _execution_params(execution: WorkflowExecution) -> tuple:
        return (
            execution.workflow_id,
            execution.entity_id,
            execution.status.value,
            execution.current_step,
            execution.step_attempts,
            iso(execution.next_step_at),
            iso(execution.started_at),
            iso(execution.completed_at),
            execution.error,
            dump_log(execution.log),
            json.dumps(execution.trigger_data),
            iso(execution.locked_until),
        )

    @staticmethod
    def _where(workflow_id: Optional[str], status: Optional[ExecutionStatus]) -> tuple[str, list]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def _insert_execution(self, execution: WorkflowExecution) -> None:
        try:
            self._execute(
                f"INSERT INTO executions ({EXECUTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                execution.id,
                *self._execution_params(execution)[:11],
                execution.version,
                iso(execution.locked_until),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateExecution(execution.workflow_id, execution.entity_id) from exc

    def _claim(self, now: str, lease_until: str, limit: int) -> list[sqlite3.Row]:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT id FROM executions
                WHERE status = 'RUNNING' AND next_step_at IS NOT NULL AND next_step_at <= ?
                  AND (locked_until IS NULL OR locked_until <= ?)
                ORDER BY next_step_at
                LIMIT ?
                """,
                (now, now, limit),
            )
            ids = [row["id"] for row in cur.fetchall()]
            rows = []
            for execution_id in ids:
                cur.execute(
                    "UPDATE executions SET version = version + 1, locked_until = ? WHERE id = ?",
                    (lease_until, execution_id),
                )
                cur.execute(
                    f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution_id,)
                )
                rows.append(cur.fetchone())
            return rows

    def _save(self, execution: WorkflowExecution, expected_version: int) -> sqlite3.Row:
        with self._transaction() as cur:
            try:
                cur.execute(
                    """
                    UPDATE executions SET
                        workflow_id = ?, entity_id = ?, status = ?, current_step = ?,
                        step_attempts = ?, next_step_at = ?, started_at = ?, completed_at = ?,
                        error = ?, log = ?, trigger_data = ?, locked_until = ?,
                        version = version + 1
                    WHERE id = ? AND version = ?
                    """,
                    (*self._execution_params(execution), execution.id, expected_version),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateExecution(execution.workflow_id, execution.entity_id) from exc
            if cur.rowcount == 0:
                cur.execute("SELECT version FROM executions WHERE id = ?", (execution.id,))
                row = cur.fetchone()
                if row is None:
                    raise ExecutionNotFound(execution.id)
                raise ConcurrentModification(
                    f"Execution {execution.id} changed (expected version "
                    f"{expected_version}, found {row['version']})"
                )
            cur.execute(f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution.id,))
            return cur.fetchone()

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflows ({WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            definition.id,
            definition.name,
            definition.description,
            int(definition.active),
            definition.trigger.kind.value,
            json.dumps(definition.trigger.config),
            dump_steps(definition.steps),
            definition.version,
            iso(definition.created_at),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        active_only: bool = False,
        trigger_kind: Optional[TriggerKind] = None,
    ) -> list[WorkflowDefinition]:
        clauses, params = [], []
        if active_only:
            clauses.append("active = 1")
        if trigger_kind is not None:
            clauses.append("trigger_kind = ?")
            params.append(TriggerKind(trigger_kind).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {WORKFLOW_COLUMNS} FROM workflows{where} ORDER BY created_at DESC",
            *params,
        )
        return [workflow_from_row(r) for r in rows]

    async def set_workflow_active(self, workflow_id: str, active: bool) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET active = ? WHERE id = ?",
            int(active),
            workflow_id,
        )
        return updated > 0

    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._insert_execution, execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        return execution_from_row(row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        where, params = self._where(workflow_id, status)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {EXECUTION_COLUMNS} FROM executions{where} "
            "ORDER BY started_at DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )
        return [execution_from_row(r) for r in rows]

    async def count_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> int:
        where, params = self._where(workflow_id, status)
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT COUNT(*) AS n FROM executions{where}", *params
        )
        return row["n"]

    async def count_by_status(self, workflow_id: str) -> dict[ExecutionStatus, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS n FROM executions WHERE workflow_id = ? GROUP BY status",
            workflow_id,
        )
        return {ExecutionStatus(r["status"]): r["n"] for r in rows}

    async def claim_due_executions(
        self, now: datetime, lease_until: datetime, limit: int
    ) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(self._claim, iso(now), iso(lease_until), limit)
        return [execution_from_row(r) for r in rows]

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        row = await asyncio.to_thread(self._save, execution, expected_version)
        return execution_from_row(row)

    def close(self) -> None:
        self._conn.close()
