"""Row encoding shared by the SQL repository backends.

JSON columns hold conditions, logs and trigger data; they are decoded back into
the tagged models here so business code never handles raw JSON strings.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .models import LogEntry, WorkflowDefinition, WorkflowExecution, WorkflowStep

WORKFLOW_COLUMNS = (
    "id, name, description, active, trigger_kind, trigger_config, steps, version, created_at"
)
EXECUTION_COLUMNS = (
    "id, workflow_id, entity_id, status, current_step, step_attempts, next_step_at, "
    "started_at, completed_at, error, log, trigger_data, version, locked_until"
)


def iso(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as fixed-width UTC ISO text so it sorts lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _loads(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


def dump_steps(steps: list[WorkflowStep]) -> str:
    return json.dumps([step.model_dump(mode="json") for step in steps])


def dump_log(log: list[LogEntry]) -> str:
    return json.dumps([entry.model_dump(mode="json") for entry in log])


def workflow_from_row(row: Mapping[str, Any]) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        active=bool(row["active"]),
        trigger={"kind": row["trigger_kind"], "config": _loads(row["trigger_config"]) or {}},
        steps=_loads(row["steps"]) or [],
        version=row["version"],
        created_at=row["created_at"],
    )


def execution_from_row(row: Mapping[str, Any]) -> WorkflowExecution:
    return WorkflowExecution(
        id=row["id"],
        workflow_id=row["workflow_id"],
        entity_id=row["entity_id"],
        status=row["status"],
        current_step=row["current_step"],
        step_attempts=row["step_attempts"],
        next_step_at=row["next_step_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error=row["error"],
        log=_loads(row["log"]) or [],
        trigger_data=_loads(row["trigger_data"]) or {},
        version=row["version"],
        locked_until=row["locked_until"],
    )
