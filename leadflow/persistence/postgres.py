"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

import asyncpg

from ..errors import ConcurrentModification, DuplicateExecution, ExecutionNotFound
from .codec import (
    EXECUTION_COLUMNS,
    WORKFLOW_COLUMNS,
    dump_log,
    dump_steps,
    execution_from_row,
    workflow_from_row,
)
from .models import ExecutionStatus, TriggerKind, WorkflowDefinition, WorkflowExecution
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL.

    Due executions are claimed with ``FOR UPDATE SKIP LOCKED`` so overlapping
    scheduler passes, even from separate hosts, never receive the same row.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                active BOOLEAN NOT NULL,
                trigger_kind TEXT NOT NULL,
                trigger_config JSONB NOT NULL,
                steps JSONB NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows (id),
                entity_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step INTEGER NOT NULL,
                step_attempts INTEGER NOT NULL DEFAULT 0,
                next_step_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                error TEXT,
                log JSONB NOT NULL,
                trigger_data JSONB NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                locked_until TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_executions_running
            ON executions (workflow_id, entity_id) WHERE status = 'RUNNING'
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_executions_due ON executions (status, next_step_at)"
        )

    @staticmethod
    def _where(workflow_id: Optional[str], status: Optional[ExecutionStatus]) -> tuple[str, list]:
        clauses, params = [], []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # ------------------------------------------------------------------
    async def create_workflow(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflows ({WORKFLOW_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                definition.id,
                definition.name,
                definition.description,
                definition.active,
                definition.trigger.kind.value,
                json.dumps(definition.trigger.config),
                dump_steps(definition.steps),
                definition.version,
                definition.created_at,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return workflow_from_row(row) if row else None

    async def list_workflows(
        self,
        active_only: bool = False,
        trigger_kind: Optional[TriggerKind] = None,
    ) -> list[WorkflowDefinition]:
        clauses, params = [], []
        if active_only:
            clauses.append("active")
        if trigger_kind is not None:
            params.append(TriggerKind(trigger_kind).value)
            clauses.append(f"trigger_kind = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {WORKFLOW_COLUMNS} FROM workflows{where} ORDER BY created_at DESC",
                *params,
            )
        finally:
            await conn.close()
        return [workflow_from_row(r) for r in rows]

    async def set_workflow_active(self, workflow_id: str, active: bool) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE workflows SET active = $1 WHERE id = $2", active, workflow_id
            )
        finally:
            await conn.close()
        return status != "UPDATE 0"

    async def create_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO executions ({EXECUTION_COLUMNS}) VALUES "
                "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)",
                execution.id,
                execution.workflow_id,
                execution.entity_id,
                execution.status.value,
                execution.current_step,
                execution.step_attempts,
                execution.next_step_at,
                execution.started_at,
                execution.completed_at,
                execution.error,
                dump_log(execution.log),
                json.dumps(execution.trigger_data),
                execution.version,
                execution.locked_until,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateExecution(execution.workflow_id, execution.entity_id) from exc
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
        return execution_from_row(row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        where, params = self._where(workflow_id, status)
        n = len(params)
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {EXECUTION_COLUMNS} FROM executions{where} "
                f"ORDER BY started_at DESC LIMIT ${n + 1} OFFSET ${n + 2}",
                *params,
                limit,
                offset,
            )
        finally:
            await conn.close()
        return [execution_from_row(r) for r in rows]

    async def count_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> int:
        where, params = self._where(workflow_id, status)
        conn = await self._connect()
        try:
            return await conn.fetchval(f"SELECT COUNT(*) FROM executions{where}", *params)
        finally:
            await conn.close()

    async def count_by_status(self, workflow_id: str) -> dict[ExecutionStatus, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM executions WHERE workflow_id = $1 GROUP BY status",
                workflow_id,
            )
        finally:
            await conn.close()
        return {ExecutionStatus(r["status"]): r["n"] for r in rows}

    async def claim_due_executions(
        self, now: datetime, lease_until: datetime, limit: int
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                UPDATE executions SET version = version + 1, locked_until = $2
                WHERE id IN (
                    SELECT id FROM executions
                    WHERE status = 'RUNNING' AND next_step_at <= $1
                      AND (locked_until IS NULL OR locked_until <= $1)
                    ORDER BY next_step_at
                    LIMIT $3
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {EXECUTION_COLUMNS}
                """,
                now,
                lease_until,
                limit,
            )
        finally:
            await conn.close()
        return sorted((execution_from_row(r) for r in rows), key=lambda e: e.next_step_at)

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                try:
                    row = await conn.fetchrow(
                        f"""
                        UPDATE executions SET
                            status = $3, current_step = $4, step_attempts = $5,
                            next_step_at = $6, completed_at = $7, error = $8, log = $9,
                            trigger_data = $10, locked_until = $11, version = version + 1
                        WHERE id = $1 AND version = $2
                        RETURNING {EXECUTION_COLUMNS}
                        """,
                        execution.id,
                        expected_version,
                        execution.status.value,
                        execution.current_step,
                        execution.step_attempts,
                        execution.next_step_at,
                        execution.completed_at,
                        execution.error,
                        dump_log(execution.log),
                        json.dumps(execution.trigger_data),
                        execution.locked_until,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise DuplicateExecution(execution.workflow_id, execution.entity_id) from exc
                if row is None:
                    version = await conn.fetchval(
                        "SELECT version FROM executions WHERE id = $1", execution.id
                    )
                    if version is None:
                        raise ExecutionNotFound(execution.id)
                    raise ConcurrentModification(
                        f"Execution {execution.id} changed (expected version "
                        f"{expected_version}, found {version})"
                    )
        finally:
            await conn.close()
        return execution_from_row(row)
