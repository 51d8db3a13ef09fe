"""Error taxonomy for the workflow engine.

Every error carries a stable ``code`` so callers of the public service API can
branch on it without importing exception classes.
"""

from __future__ import annotations


class LeadflowError(Exception):
    """Base class for all engine errors."""

    code = "LEADFLOW_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicateExecution(LeadflowError):
    """A RUNNING execution already exists for the (workflow, entity) pair."""

    code = "DUPLICATE_EXECUTION"

    def __init__(self, workflow_id: str, entity_id: str) -> None:
        super().__init__(
            f"Execution already running for workflow {workflow_id} and entity {entity_id}"
        )
        self.workflow_id = workflow_id
        self.entity_id = entity_id


class WorkflowInactiveOrMissing(LeadflowError):
    code = "WORKFLOW_INACTIVE_OR_MISSING"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found or inactive")
        self.workflow_id = workflow_id


class ExecutionNotFound(LeadflowError):
    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class InvalidTransition(LeadflowError):
    """Requested lifecycle change is not legal from the current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, execution_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} execution {execution_id} from status {current}")
        self.execution_id = execution_id
        self.current = current
        self.action = action


class InvalidWorkflowDefinition(LeadflowError):
    code = "INVALID_WORKFLOW_DEFINITION"


class TemplateNotFound(LeadflowError):
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_ref: str) -> None:
        super().__init__(f"Template not found: {template_ref}")
        self.template_ref = template_ref


class SendFailure(LeadflowError):
    code = "SEND_FAILURE"


class EntityNotFound(LeadflowError):
    code = "ENTITY_NOT_FOUND"

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Entity {entity_id} not found")
        self.entity_id = entity_id


class CriticalProcessingError(LeadflowError):
    code = "CRITICAL_PROCESSING_ERROR"


class ConcurrentModification(LeadflowError):
    """Optimistic version check failed while saving an execution."""

    code = "CONCURRENT_MODIFICATION"
