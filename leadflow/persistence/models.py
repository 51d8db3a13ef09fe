"""Data models for persisted workflow definitions and execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerKind(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    TAG_ADDED = "TAG_ADDED"
    DATE_BASED = "DATE_BASED"
    MANUAL = "MANUAL"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogAction(str, Enum):
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_PROCESSING_ERROR = "STEP_PROCESSING_ERROR"


class LogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    CRITICAL_ERROR = "CRITICAL_ERROR"


# ----------------------------------------------------------------------
# Step conditions (tagged union decoded at the storage boundary)


class StatusInCondition(BaseModel):
    kind: Literal["status_in"] = "status_in"
    values: List[str]


class SourceInCondition(BaseModel):
    kind: Literal["source_in"] = "source_in"
    values: List[str]


class HasAnyTagCondition(BaseModel):
    kind: Literal["has_any_tag"] = "has_any_tag"
    tags: List[str]


class FieldCondition(BaseModel):
    """Compare a single lead attribute against a literal value."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    kind: Literal["field"] = "field"
    field: str
    operator: Literal["eq", "ne", "contains", "gt", "lt"] = "eq"
    value: str


StepCondition = Annotated[
    Union[StatusInCondition, SourceInCondition, HasAnyTagCondition, FieldCondition],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# Workflow definitions


class Trigger(BaseModel):
    """Event class and matching configuration that starts a workflow."""

    kind: TriggerKind
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowStep(BaseModel):
    """One delayed, conditional email action within a workflow."""

    order: int = Field(ge=1)
    template_ref: str
    delay_hours: int = Field(default=0, ge=0)
    conditions: List[StepCondition] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Named, ordered sequence of steps plus its trigger."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    active: bool = True
    trigger: Trigger
    steps: List[WorkflowStep] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("steps")
    @classmethod
    def _ensure_contiguous_order(cls, steps: List[WorkflowStep]) -> List[WorkflowStep]:
        steps = sorted(steps, key=lambda s: s.order)
        for expected, step in enumerate(steps, start=1):
            if step.order != expected:
                raise ValueError(
                    f"step orders must be contiguous from 1, found {step.order} at position {expected}"
                )
        return steps

    def step(self, order: int) -> Optional[WorkflowStep]:
        """Return the step with ``order`` or ``None`` past the end."""
        if 1 <= order <= len(self.steps):
            return self.steps[order - 1]
        return None


# ----------------------------------------------------------------------
# Execution state


class LogEntry(BaseModel):
    """Append-only record of something that happened to an execution."""

    timestamp: datetime = Field(default_factory=utcnow)
    action: LogAction
    step: int
    template: Optional[str] = None
    recipient: Optional[str] = None
    status: LogStatus
    error: Optional[str] = None
    trace: Optional[str] = None


class WorkflowExecution(BaseModel):
    """Persisted progress of one workflow against one entity."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    entity_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step: int = 0
    step_attempts: int = 0
    next_step_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    log: List[LogEntry] = Field(default_factory=list)
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    locked_until: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)
