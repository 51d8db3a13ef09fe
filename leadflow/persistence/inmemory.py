"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import Dict, Optional

from ..errors import ConcurrentModification, DuplicateExecution, ExecutionNotFound
from .models import ExecutionStatus, TriggerKind, WorkflowDefinition, WorkflowExecution
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copied on the way
    in and out so callers never mutate repository state directly.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _running_conflict(self, execution: WorkflowExecution) -> bool:
        if execution.status != ExecutionStatus.RUNNING:
            return False
        return any(
            other.id != execution.id
            and other.workflow_id == execution.workflow_id
            and other.entity_id == execution.entity_id
            and other.status == ExecutionStatus.RUNNING
            for other in self._executions.values()
        )

    def _filtered(
        self, workflow_id: Optional[str], status: Optional[ExecutionStatus]
    ) -> list[WorkflowExecution]:
        return [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]

    # ------------------------------------------------------------------
    async def create_workflow(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            self._workflows[definition.id] = definition.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        active_only: bool = False,
        trigger_kind: Optional[TriggerKind] = None,
    ) -> list[WorkflowDefinition]:
        workflows = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (not active_only or wf.active)
            and (trigger_kind is None or wf.trigger.kind == trigger_kind)
        ]
        return sorted(workflows, key=lambda wf: wf.created_at, reverse=True)

    async def set_workflow_active(self, workflow_id: str, active: bool) -> bool:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                return False
            wf.active = active
            return True

    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if self._running_conflict(execution):
                raise DuplicateExecution(execution.workflow_id, execution.entity_id)
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        executions = sorted(
            self._filtered(workflow_id, status), key=lambda e: e.started_at, reverse=True
        )
        return [e.model_copy(deep=True) for e in executions[offset : offset + limit]]

    async def count_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> int:
        return len(self._filtered(workflow_id, status))

    async def count_by_status(self, workflow_id: str) -> dict[ExecutionStatus, int]:
        return dict(Counter(e.status for e in self._filtered(workflow_id, None)))

    async def claim_due_executions(
        self, now: datetime, lease_until: datetime, limit: int
    ) -> list[WorkflowExecution]:
        async with self._lock:
            due = sorted(
                (
                    e
                    for e in self._executions.values()
                    if e.status == ExecutionStatus.RUNNING
                    and e.next_step_at is not None
                    and e.next_step_at <= now
                    and (e.locked_until is None or e.locked_until <= now)
                ),
                key=lambda e: e.next_step_at,
            )[:limit]
            for execution in due:
                execution.version += 1
                execution.locked_until = lease_until
            return [e.model_copy(deep=True) for e in due]

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise ExecutionNotFound(execution.id)
            if stored.version != expected_version:
                raise ConcurrentModification(
                    f"Execution {execution.id} changed (expected version "
                    f"{expected_version}, found {stored.version})"
                )
            if self._running_conflict(execution):
                raise DuplicateExecution(execution.workflow_id, execution.entity_id)
            updated = execution.model_copy(deep=True, update={"version": expected_version + 1})
            self._executions[execution.id] = updated
            return updated.model_copy(deep=True)
