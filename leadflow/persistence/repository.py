"""Repository abstraction for workflow definitions and execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import ExecutionStatus, TriggerKind, WorkflowDefinition, WorkflowExecution


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Backends must make ``create_execution``, ``claim_due_executions`` and
    ``save_execution`` atomic: they are the engine's only coordination points.
    """

    async def create_workflow(self, definition: WorkflowDefinition) -> None:
        """Persist a new workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(
        self,
        active_only: bool = False,
        trigger_kind: Optional[TriggerKind] = None,
    ) -> list[WorkflowDefinition]:
        """Return workflow definitions, newest first."""

    async def set_workflow_active(self, workflow_id: str, active: bool) -> bool:
        """Toggle the ``active`` flag. Returns ``False`` when the workflow is unknown."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Insert an execution.

        Raises:
            DuplicateExecution: if ``execution`` is RUNNING and another RUNNING
                execution exists for the same workflow and entity.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        """Return executions, most recently started first."""

    async def count_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> int:
        """Count executions matching the filters."""

    async def count_by_status(self, workflow_id: str) -> dict[ExecutionStatus, int]:
        """Count one workflow's executions grouped by status."""

    async def claim_due_executions(
        self, now: datetime, lease_until: datetime, limit: int
    ) -> list[WorkflowExecution]:
        """Claim RUNNING executions due at ``now`` that hold no live lease.

        Each returned execution has its ``version`` bumped and ``locked_until``
        set to ``lease_until``; a concurrent caller never receives the same row.
        """

    async def save_execution(
        self, execution: WorkflowExecution, expected_version: int
    ) -> WorkflowExecution:
        """Write ``execution`` if the stored version still equals ``expected_version``.

        Returns the stored execution with its version bumped.

        Raises:
            ExecutionNotFound: if the execution does not exist.
            ConcurrentModification: if the stored version has moved on.
            DuplicateExecution: if the write would create a second RUNNING
                execution for the same workflow and entity.
        """
