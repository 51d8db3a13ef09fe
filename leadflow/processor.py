"""Step processing engine for leadflow executions."""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timedelta
from typing import Callable, Optional

from .adapters import EmailSender, EntityRepository, TemplateStore
from .conditions import conditions_match
from .config import RetryConfig
from .constants import MAX_COMMIT_ATTEMPTS
from .contracts import EmailMessage, Lead, SendResult
from .errors import (
    ConcurrentModification,
    CriticalProcessingError,
    EntityNotFound,
    ExecutionNotFound,
    SendFailure,
    TemplateNotFound,
)
from .persistence import WorkflowRepository
from .persistence.models import (
    ExecutionStatus,
    LogAction,
    LogEntry,
    LogStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    utcnow,
)
from .templates import render_template
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class StepProcessor:
    """Runs the next step of a claimed execution and persists the transition.

    Each call moves a RUNNING execution to exactly one of: RUNNING at the next
    step, COMPLETED or FAILED. Exceptions never escape ``process`` except when
    the outcome itself cannot be written to the repository.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        entities: EntityRepository,
        templates: TemplateStore,
        sender: EmailSender,
        retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._entities = entities
        self._templates = templates
        self._sender = sender
        self._retry = retry or RetryConfig()
        self._clock = clock

    async def process(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Process ``execution``, which the caller must have claimed."""
        if execution.status != ExecutionStatus.RUNNING:
            logger.debug(f"Execution {execution.id} is {execution.status.value}, skipping")
            return execution

        claimed_version = execution.version
        latest = await self._repository.get_execution(execution.id)
        if latest is None:
            raise ExecutionNotFound(execution.id)
        if latest.version != claimed_version or latest.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Execution {execution.id} changed after it was claimed "
                f"(now {latest.status.value}); skipping step"
            )
            return await self._release(execution, latest)

        base_log_len = len(execution.log)
        now = self._clock()
        try:
            outcome = await self._advance(execution.model_copy(deep=True), now)
        except Exception as e:
            logger.exception(f"Critical error processing execution {execution.id}")
            outcome = self._fail_critical(execution.model_copy(deep=True), e, now)

        return await self._commit(outcome, claimed_version, base_log_len)

    # ------------------------------------------------------------------
    # State transitions
    async def _advance(self, execution: WorkflowExecution, now: datetime) -> WorkflowExecution:
        workflow = await self._repository.get_workflow(execution.workflow_id)
        if workflow is None:
            raise CriticalProcessingError(f"Workflow {execution.workflow_id} not found")

        order = execution.current_step + 1
        step = workflow.step(order)
        if step is None:
            logger.info(f"Workflow completed for execution {execution.id}")
            return self._complete(execution, now)

        lead = await self._entities.get(execution.entity_id)
        if lead is None:
            raise EntityNotFound(execution.entity_id)

        if not conditions_match(step.conditions, lead):
            logger.info(f"Step {order} skipped for execution {execution.id}: conditions not met")
            execution.log.append(
                LogEntry(
                    timestamp=now,
                    action=LogAction.STEP_SKIPPED,
                    step=order,
                    template=step.template_ref,
                    recipient=lead.email,
                    status=LogStatus.SKIPPED,
                )
            )
            return self._schedule_next(workflow, execution, order, now)

        template_name, result = await self._send(execution, step, lead)
        if result.success:
            logger.info(f"Email sent for step {order} of execution {execution.id}")
            execution.log.append(
                LogEntry(
                    timestamp=now,
                    action=LogAction.EMAIL_SENT,
                    step=order,
                    template=template_name,
                    recipient=lead.email,
                    status=LogStatus.SUCCESS,
                )
            )
            return self._schedule_next(workflow, execution, order, now)

        return self._handle_send_failure(
            execution, order, template_name, lead.email, result.error, now
        )

    async def _send(
        self, execution: WorkflowExecution, step: WorkflowStep, lead: Lead
    ) -> tuple[str, SendResult]:
        try:
            template = await self._templates.resolve(step.template_ref)
            if template is None:
                raise TemplateNotFound(step.template_ref)
        except TemplateNotFound as e:
            return step.template_ref, SendResult.failed(e.message)

        rendered = render_template(template, lead.variables())
        message = EmailMessage(
            to=lead.email,
            subject=rendered.subject,
            html_body=rendered.html_body,
            text_body=rendered.text_body,
            headers={
                "X-Leadflow-Execution-Id": execution.id,
                "X-Leadflow-Step": str(step.order),
            },
        )
        try:
            return template.name, await self._sender.send(message)
        except SendFailure as e:
            return template.name, SendResult.failed(e.message)

    def _schedule_next(
        self,
        workflow: WorkflowDefinition,
        execution: WorkflowExecution,
        order: int,
        now: datetime,
    ) -> WorkflowExecution:
        execution.current_step = order
        execution.step_attempts = 0
        next_step = workflow.step(order + 1)
        if next_step is None:
            logger.info(f"Workflow completed for execution {execution.id}")
            return self._complete(execution, now)
        execution.next_step_at = now + timedelta(hours=next_step.delay_hours)
        logger.debug(f"Step {order + 1} of execution {execution.id} due at {execution.next_step_at}")
        return execution

    def _complete(self, execution: WorkflowExecution, now: datetime) -> WorkflowExecution:
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = now
        execution.next_step_at = None
        return execution

    def _handle_send_failure(
        self,
        execution: WorkflowExecution,
        order: int,
        template_name: str,
        recipient: str,
        error: Optional[str],
        now: datetime,
    ) -> WorkflowExecution:
        error = error or "Unknown send error"
        execution.step_attempts += 1

        if execution.step_attempts < self._retry.max_attempts:
            delay = self._retry.base_delay_seconds * compute_backoff(
                execution.step_attempts - 1, base=self._retry.backoff_base, jitter=0
            )
            execution.next_step_at = now + timedelta(seconds=delay)
            status = LogStatus.RETRY_SCHEDULED
            logger.warning(
                f"Send failed at step {order} of execution {execution.id} "
                f"(attempt {execution.step_attempts}/{self._retry.max_attempts}), "
                f"retrying at {execution.next_step_at}: {error}"
            )
        else:
            execution.status = ExecutionStatus.FAILED
            execution.completed_at = now
            execution.next_step_at = None
            execution.error = f"Failure at step {order}: {error}"
            status = LogStatus.FAILED
            logger.error(f"Execution {execution.id} failed at step {order}: {error}")

        execution.log.append(
            LogEntry(
                timestamp=now,
                action=LogAction.EMAIL_SEND_FAILED,
                step=order,
                template=template_name,
                recipient=recipient,
                status=status,
                error=error,
            )
        )
        return execution

    def _fail_critical(
        self, execution: WorkflowExecution, exc: BaseException, now: datetime
    ) -> WorkflowExecution:
        execution.log.append(
            LogEntry(
                timestamp=now,
                action=LogAction.STEP_PROCESSING_ERROR,
                step=execution.current_step + 1,
                status=LogStatus.CRITICAL_ERROR,
                error=str(exc),
                trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            )
        )
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = now
        execution.next_step_at = None
        execution.error = f"Critical processing error: {exc}"
        return execution

    # ------------------------------------------------------------------
    # Persistence
    async def _release(
        self, claimed: WorkflowExecution, latest: WorkflowExecution
    ) -> WorkflowExecution:
        """Drop this processor's lease on ``latest`` and leave everything else as is.

        A lease taken by a later claim is left alone.
        """
        if latest.locked_until is None or latest.locked_until != claimed.locked_until:
            return latest
        latest.locked_until = None
        try:
            return await self._repository.save_execution(latest, latest.version)
        except ConcurrentModification:
            return await self._repository.get_execution(latest.id) or latest

    async def _commit(
        self, outcome: WorkflowExecution, expected_version: int, base_log_len: int
    ) -> WorkflowExecution:
        """Write ``outcome`` and release the claim.

        If a pause or resume landed while the step ran, the stored row is
        reloaded and the step's progress merged into it.
        """
        new_entries = outcome.log[base_log_len:]
        outcome.locked_until = None

        for _ in range(MAX_COMMIT_ATTEMPTS):
            try:
                return await self._repository.save_execution(outcome, expected_version)
            except ConcurrentModification:
                latest = await self._repository.get_execution(outcome.id)
                if latest is None:
                    raise ExecutionNotFound(outcome.id)
                if latest.is_terminal:
                    logger.warning(
                        f"Execution {outcome.id} already {latest.status.value}; "
                        "discarding concurrent step result"
                    )
                    return latest
                logger.info(
                    f"Execution {outcome.id} changed while processing "
                    f"(now {latest.status.value}); merging step result"
                )
                outcome = self._merge(latest, outcome, new_entries)
                expected_version = latest.version

        raise ConcurrentModification(
            f"Could not save execution {outcome.id} after {MAX_COMMIT_ATTEMPTS} attempts"
        )

    @staticmethod
    def _merge(
        latest: WorkflowExecution, outcome: WorkflowExecution, new_entries: list[LogEntry]
    ) -> WorkflowExecution:
        merged = latest.model_copy(deep=True)
        merged.current_step = max(latest.current_step, outcome.current_step)
        merged.step_attempts = outcome.step_attempts
        merged.log = latest.log + new_entries
        merged.locked_until = None
        if outcome.is_terminal:
            merged.status = outcome.status
            merged.completed_at = outcome.completed_at
            merged.error = outcome.error
            merged.next_step_at = None
        elif latest.status == ExecutionStatus.PAUSED:
            merged.next_step_at = None
        else:
            merged.status = ExecutionStatus.RUNNING
            merged.next_step_at = outcome.next_step_at
        return merged
