"""Contracts exchanged between the engine, its collaborators and its callers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import WorkflowExecution


class Lead(BaseModel):
    """Business entity whose lifecycle events trigger workflows."""

    id: str
    email: str
    status: Optional[str] = None
    source: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def attribute(self, name: str) -> Any:
        """Return a core field or free-form attribute, ``None`` when absent."""
        if name in ("id", "email", "status", "source", "tags"):
            return getattr(self, name)
        return self.attributes.get(name)

    def variables(self) -> Dict[str, str]:
        """Flatten the lead into string template variables."""
        values = {key: "" if value is None else str(value) for key, value in self.attributes.items()}
        values.update(
            id=self.id,
            email=self.email,
            status=self.status or "",
            source=self.source or "",
            tags=", ".join(self.tags),
        )
        return values


class EmailTemplate(BaseModel):
    """Template content with ``{{variable}}`` placeholders."""

    name: str
    subject: str
    html_body: str
    text_body: str = ""


class EmailMessage(BaseModel):
    to: str
    subject: str
    html_body: str
    text_body: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)


class SendResult(BaseModel):
    """Outcome reported by an email sender adapter."""

    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def ok(cls, message_id: Optional[str] = None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "SendResult":
        return cls(success=False, error=error)


class OperationResult(BaseModel):
    """Structured result returned by lifecycle operations."""

    success: bool
    execution: Optional[WorkflowExecution] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class ProcessResult(BaseModel):
    success: bool = True
    processed_count: int = 0
    error: Optional[str] = None


class WorkflowStats(BaseModel):
    """Execution counts for one workflow grouped by status."""

    total: int = 0
    running: int = 0
    completed: int = 0
    paused: int = 0
    failed: int = 0


class TriggerFailure(BaseModel):
    workflow_id: str
    error_code: str
    error: str


class TriggerEvaluation(BaseModel):
    """Executions started (and failures collected) for one lifecycle event."""

    started: List[str] = Field(default_factory=list)
    failures: List[TriggerFailure] = Field(default_factory=list)


class EntityStartResult(BaseModel):
    entity_id: str
    result: OperationResult


class StartSummary(BaseModel):
    """Per-entity results of a bulk manual start."""

    results: List[EntityStartResult] = Field(default_factory=list)
    total: int = 0
    success: int = 0
    errors: int = 0


class ExecutionPage(BaseModel):
    executions: List[WorkflowExecution] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False
