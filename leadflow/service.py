"""Public programmatic API of the workflow engine."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .adapters import EmailSender, EntityRepository, TemplateStore, get_catalog, get_email_sender
from .config import LeadflowConfig, load_config
from .constants import DEFAULT_PAGE_SIZE, MAX_COMMIT_ATTEMPTS
from .contracts import (
    EntityStartResult,
    ExecutionPage,
    OperationResult,
    ProcessResult,
    StartSummary,
    TriggerEvaluation,
    WorkflowStats,
)
from .errors import (
    ConcurrentModification,
    CriticalProcessingError,
    ExecutionNotFound,
    InvalidTransition,
    InvalidWorkflowDefinition,
    LeadflowError,
    WorkflowInactiveOrMissing,
)
from .persistence import WorkflowRepository, close_repository, get_repository
from .persistence.models import (
    ExecutionStatus,
    Trigger,
    TriggerKind,
    WorkflowDefinition,
    WorkflowExecution,
    utcnow,
)
from .processor import StepProcessor
from .scheduler import SchedulerLoop
from .triggers import TriggerEvaluator

logger = logging.getLogger(__name__)


class WorkflowService:
    """Service responsible for workflow definitions and their executions.

    Holds no mutable state of its own: everything lives in the repository, so
    any number of instances (or processes) can share one database.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        entities: EntityRepository,
        templates: TemplateStore,
        sender: EmailSender,
        config: Optional[LeadflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._config = config or LeadflowConfig()
        self._clock = clock
        self._sender = sender
        self.processor = StepProcessor(
            repository, entities, templates, sender, retry=self._config.retry, clock=clock
        )
        self.scheduler = SchedulerLoop(
            repository, self.processor, config=self._config.scheduler, clock=clock
        )
        self.triggers = TriggerEvaluator(repository, self.start_workflow_execution)

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    async def close(self) -> None:
        """Disconnect the email sender and close the repository connection."""
        await self._sender.disconnect()
        close_repository(self._repository)

    # ------------------------------------------------------------------
    # Workflow definitions
    async def create_workflow(
        self,
        name: str,
        trigger: Trigger | Dict[str, Any],
        steps: Iterable[Dict[str, Any]],
        description: Optional[str] = None,
        active: bool = True,
    ) -> WorkflowDefinition:
        """Create a workflow; step orders follow list position starting at 1.

        Raises:
            InvalidWorkflowDefinition: if the trigger or any step is malformed.
        """
        try:
            definition = WorkflowDefinition(
                name=name,
                description=description,
                active=active,
                trigger=trigger,
                steps=[{**dict(step), "order": i} for i, step in enumerate(steps, start=1)],
            )
        except ValidationError as e:
            raise InvalidWorkflowDefinition(f"Invalid workflow {name!r}: {e}") from e

        await self._repository.create_workflow(definition)
        logger.info(f"Workflow created: {definition.name} ({definition.id})")
        return definition

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self._repository.get_workflow(workflow_id)

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowDefinition]:
        return await self._repository.list_workflows(active_only=active_only)

    async def set_workflow_active(self, workflow_id: str, active: bool) -> bool:
        """Toggle whether new executions may start. Running ones are unaffected."""
        found = await self._repository.set_workflow_active(workflow_id, active)
        if found:
            logger.info(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")
        return found

    # ------------------------------------------------------------------
    # Execution lifecycle
    async def _as_result(self, operation: str, action: Awaitable[WorkflowExecution]) -> OperationResult:
        try:
            execution = await action
        except LeadflowError as e:
            logger.warning(f"{operation} failed: {e.message}")
            return OperationResult(success=False, error_code=e.code, error=e.message)
        except Exception as e:
            logger.exception(f"{operation} failed unexpectedly")
            return OperationResult(
                success=False, error_code=CriticalProcessingError.code, error=str(e)
            )
        return OperationResult(success=True, execution=execution)

    async def start_workflow_execution(
        self,
        workflow_id: str,
        entity_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        """Create a RUNNING execution whose first step is due immediately."""
        return await self._as_result(
            "Start execution", self._start(workflow_id, entity_id, trigger_data or {})
        )

    async def _start(
        self, workflow_id: str, entity_id: str, trigger_data: Dict[str, Any]
    ) -> WorkflowExecution:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None or not workflow.active:
            raise WorkflowInactiveOrMissing(workflow_id)

        now = self._clock()
        execution = WorkflowExecution(
            workflow_id=workflow_id,
            entity_id=entity_id,
            status=ExecutionStatus.RUNNING,
            current_step=0,
            next_step_at=now,
            started_at=now,
            trigger_data=trigger_data,
        )
        await self._repository.create_execution(execution)
        logger.info(f"Execution {execution.id} started for workflow {workflow_id}, entity {entity_id}")
        return execution

    async def start_for_entities(
        self,
        workflow_id: str,
        entity_ids: Iterable[str],
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> StartSummary:
        """Manually start ``workflow_id`` for several entities."""
        trigger_data = trigger_data or {"trigger": TriggerKind.MANUAL.value}
        summary = StartSummary()
        for entity_id in entity_ids:
            result = await self.start_workflow_execution(workflow_id, entity_id, trigger_data)
            summary.results.append(EntityStartResult(entity_id=entity_id, result=result))
        summary.total = len(summary.results)
        summary.success = sum(1 for r in summary.results if r.result.success)
        summary.errors = summary.total - summary.success
        return summary

    async def _transition(
        self,
        execution_id: str,
        action: str,
        required: ExecutionStatus,
        apply: Callable[[WorkflowExecution], Awaitable[None]],
    ) -> WorkflowExecution:
        for _ in range(MAX_COMMIT_ATTEMPTS):
            execution = await self._repository.get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFound(execution_id)
            if execution.status != required:
                raise InvalidTransition(execution_id, execution.status.value, action)
            await apply(execution)
            try:
                saved = await self._repository.save_execution(execution, execution.version)
            except ConcurrentModification:
                continue
            logger.info(f"Execution {execution_id}: {action} -> {saved.status.value}")
            return saved
        raise ConcurrentModification(f"Could not {action} execution {execution_id}")

    async def pause_workflow_execution(self, execution_id: str) -> OperationResult:
        async def apply(execution: WorkflowExecution) -> None:
            execution.status = ExecutionStatus.PAUSED
            execution.next_step_at = None

        return await self._as_result(
            "Pause execution",
            self._transition(execution_id, "pause", ExecutionStatus.RUNNING, apply),
        )

    async def resume_workflow_execution(self, execution_id: str) -> OperationResult:
        """Resume a paused execution, restarting the wait for its next step."""

        async def apply(execution: WorkflowExecution) -> None:
            now = self._clock()
            workflow = await self._repository.get_workflow(execution.workflow_id)
            next_step = workflow.step(execution.current_step + 1) if workflow else None
            execution.status = ExecutionStatus.RUNNING
            execution.next_step_at = (
                now + timedelta(hours=next_step.delay_hours) if next_step else now
            )

        return await self._as_result(
            "Resume execution",
            self._transition(execution_id, "resume", ExecutionStatus.PAUSED, apply),
        )

    async def process_scheduled_steps(self) -> ProcessResult:
        return await self.scheduler.process_scheduled_steps()

    async def evaluate_triggers(
        self,
        entity_id: str,
        event_kind: TriggerKind | str,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> TriggerEvaluation:
        return await self.triggers.evaluate(entity_id, event_kind, event_data)

    # ------------------------------------------------------------------
    # Inspection
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._repository.get_execution(execution_id)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> ExecutionPage:
        executions = await self._repository.list_executions(
            workflow_id=workflow_id, status=status, limit=limit, offset=offset
        )
        total = await self._repository.count_executions(workflow_id=workflow_id, status=status)
        return ExecutionPage(
            executions=executions,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )

    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats:
        counts = await self._repository.count_by_status(workflow_id)
        return WorkflowStats(
            total=sum(counts.values()),
            running=counts.get(ExecutionStatus.RUNNING, 0),
            completed=counts.get(ExecutionStatus.COMPLETED, 0),
            paused=counts.get(ExecutionStatus.PAUSED, 0),
            failed=counts.get(ExecutionStatus.FAILED, 0),
        )


def get_service(config: Optional[LeadflowConfig] = None) -> WorkflowService:
    """Build a service wired from configuration."""

    repository = get_repository(config=config) if config else get_repository()
    config = config or load_config()
    entities, templates = get_catalog(config)
    return WorkflowService(
        repository=repository,
        entities=entities,
        templates=templates,
        sender=get_email_sender(config=config),
        config=config,
    )


__all__: List[str] = ["WorkflowService", "get_service"]
