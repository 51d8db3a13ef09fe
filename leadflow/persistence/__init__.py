"""Persistence layer for leadflow workflows and executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ExecutionStatus,
    LogAction,
    LogEntry,
    LogStatus,
    Trigger,
    TriggerKind,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``LEADFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("LEADFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available (install asyncpg)")
        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def close_repository(repository: Optional[WorkflowRepository] = None) -> None:
    """Close ``repository`` (default: the cached one) if its backend holds a connection.

    A closed cached instance is forgotten so the next ``get_repository`` call
    opens a fresh one.
    """

    global _repository_instance
    repository = repository or _repository_instance
    close = getattr(repository, "close", None)
    if close is None:
        return
    close()
    if repository is _repository_instance:
        _repository_instance = None


__all__ = [
    "ExecutionStatus",
    "LogAction",
    "LogEntry",
    "LogStatus",
    "Trigger",
    "TriggerKind",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowStep",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "close_repository",
    "get_repository",
]
