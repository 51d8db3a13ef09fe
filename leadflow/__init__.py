"""leadflow: Durable email workflow automation for CRM leads."""

from .adapters import (
    EmailSender,
    EntityRepository,
    InMemoryEntityRepository,
    InMemoryTemplateStore,
    LoggingEmailSender,
    TemplateStore,
    get_email_sender,
)
from .contracts import EmailMessage, EmailTemplate, Lead, OperationResult, SendResult
from .persistence import (
    ExecutionStatus,
    InMemoryWorkflowRepository,
    TriggerKind,
    WorkflowDefinition,
    WorkflowExecution,
    get_repository,
)
from .processor import StepProcessor
from .scheduler import SchedulerLoop
from .service import WorkflowService, get_service
from .triggers import TriggerEvaluator, register_trigger_matcher

__version__ = "0.1.0"
__all__ = [
    "EmailMessage",
    "EmailSender",
    "EmailTemplate",
    "EntityRepository",
    "ExecutionStatus",
    "InMemoryEntityRepository",
    "InMemoryTemplateStore",
    "InMemoryWorkflowRepository",
    "Lead",
    "LoggingEmailSender",
    "OperationResult",
    "SchedulerLoop",
    "SendResult",
    "StepProcessor",
    "TemplateStore",
    "TriggerEvaluator",
    "TriggerKind",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowService",
    "get_email_sender",
    "get_repository",
    "get_service",
    "register_trigger_matcher",
]
