"""Utility functions to load workflow files and format runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from leadflow.persistence.models import WorkflowDefinition, WorkflowExecution


def _load_workflow_file(path: Path) -> dict[str, Any]:
    """Read a YAML workflow definition.

    Expected keys: ``name``, ``trigger`` (``kind`` and optional ``config``),
    ``steps`` (each with ``template_ref``, ``delay_hours`` and optional
    ``conditions``) and optionally ``description`` and ``active``.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    missing = [key for key in ("name", "trigger", "steps") if key not in data]
    if missing:
        raise ValueError(f"{path} is missing required keys: {', '.join(missing)}")
    return data


def _format_timestamp(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _format_workflow(definition: WorkflowDefinition) -> list[str]:
    state = "active" if definition.active else "inactive"
    lines = [
        f"Workflow {definition.id}: {definition.name} ({state})",
        f"Trigger: {definition.trigger.kind.value} {definition.trigger.config or ''}".rstrip(),
    ]
    for step in definition.steps:
        conditions = ", ".join(c.kind for c in step.conditions) or "none"
        lines.append(
            f"  {step.order}. {step.template_ref} after {step.delay_hours}h (conditions: {conditions})"
        )
    return lines


def _format_execution(execution: WorkflowExecution) -> list[str]:
    lines = [
        f"Execution {execution.id}: {execution.status.value}",
        f"Workflow: {execution.workflow_id}  Entity: {execution.entity_id}",
        f"Current step: {execution.current_step}  Next step at: {_format_timestamp(execution.next_step_at)}",
    ]
    if execution.completed_at:
        lines.append(f"Completed at: {_format_timestamp(execution.completed_at)}")
    if execution.error:
        lines.append(f"Error: {execution.error}")
    for entry in execution.log:
        line = f"- [{_format_timestamp(entry.timestamp)}] step {entry.step} {entry.action.value}: {entry.status.value}"
        if entry.error:
            line += f" ({entry.error})"
        lines.append(line)
    return lines
