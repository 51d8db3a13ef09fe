"""Trigger evaluation: which active workflows start for a lifecycle event."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .conditions import as_number
from .contracts import OperationResult, TriggerEvaluation, TriggerFailure
from .errors import CriticalProcessingError
from .persistence import WorkflowRepository
from .persistence.models import Trigger, TriggerKind

logger = logging.getLogger(__name__)

TriggerMatcher = Callable[[Trigger, Mapping[str, Any]], bool]
StartExecution = Callable[[str, str, Dict[str, Any]], Awaitable[OperationResult]]

_MATCHERS: Dict[TriggerKind, TriggerMatcher] = {}


def register_trigger_matcher(kind: TriggerKind) -> Callable[[TriggerMatcher], TriggerMatcher]:
    """Register the matcher deciding whether ``kind`` triggers fire for an event."""

    def decorator(func: TriggerMatcher) -> TriggerMatcher:
        _MATCHERS[TriggerKind(kind)] = func
        return func

    return decorator


def _event_value(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


@register_trigger_matcher(TriggerKind.LEAD_CREATED)
def _match_lead_created(trigger: Trigger, data: Mapping[str, Any]) -> bool:
    return True


@register_trigger_matcher(TriggerKind.MANUAL)
def _match_manual(trigger: Trigger, data: Mapping[str, Any]) -> bool:
    return True


@register_trigger_matcher(TriggerKind.STATUS_CHANGED)
def _match_status_changed(trigger: Trigger, data: Mapping[str, Any]) -> bool:
    expected = trigger.config.get("status")
    return expected is not None and expected == _event_value(data, "newStatus", "new_status")


@register_trigger_matcher(TriggerKind.TAG_ADDED)
def _match_tag_added(trigger: Trigger, data: Mapping[str, Any]) -> bool:
    expected = trigger.config.get("tag")
    return expected is not None and expected == _event_value(data, "tagName", "tag_name")


@register_trigger_matcher(TriggerKind.DATE_BASED)
def _match_date_based(trigger: Trigger, data: Mapping[str, Any]) -> bool:
    field = trigger.config.get("dateField")
    if field is None or field != _event_value(data, "dateField", "date_field"):
        return False
    days_after = trigger.config.get("daysAfter")
    if days_after is None:
        return True
    elapsed = as_number(_event_value(data, "daysElapsed", "days_elapsed"))
    threshold = as_number(days_after)
    if elapsed is None or threshold is None:
        return False
    return elapsed >= threshold


def trigger_matches(trigger: Trigger, event_data: Mapping[str, Any]) -> bool:
    """Return ``True`` if ``trigger`` fires for ``event_data``.

    Kinds without a registered matcher never fire.
    """
    matcher = _MATCHERS.get(trigger.kind)
    if matcher is None:
        return False
    return matcher(trigger, event_data)


class TriggerEvaluator:
    """Starts an execution for every active workflow matching an event."""

    def __init__(self, repository: WorkflowRepository, start_execution: StartExecution) -> None:
        self._repository = repository
        self._start_execution = start_execution

    async def evaluate(
        self,
        entity_id: str,
        event_kind: TriggerKind | str,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> TriggerEvaluation:
        event_kind = TriggerKind(event_kind)
        event_data = event_data or {}
        evaluation = TriggerEvaluation()

        workflows = await self._repository.list_workflows(
            active_only=True, trigger_kind=event_kind
        )
        logger.debug(
            f"Evaluating {len(workflows)} {event_kind.value} workflows for entity {entity_id}"
        )

        for workflow in workflows:
            try:
                matched = trigger_matches(workflow.trigger, event_data)
            except Exception as e:
                logger.exception(f"Trigger matcher failed for workflow {workflow.id}")
                evaluation.failures.append(
                    TriggerFailure(
                        workflow_id=workflow.id,
                        error_code=CriticalProcessingError.code,
                        error=f"{type(e).__name__}: {e}",
                    )
                )
                continue
            if not matched:
                continue
            logger.info(f"Starting workflow {workflow.name!r} for entity {entity_id}")
            result = await self._start_execution(
                workflow.id, entity_id, {"trigger": event_kind.value, **event_data}
            )
            if result.success and result.execution is not None:
                evaluation.started.append(result.execution.id)
            else:
                evaluation.failures.append(
                    TriggerFailure(
                        workflow_id=workflow.id,
                        error_code=result.error_code or "UNKNOWN",
                        error=result.error or "",
                    )
                )
        return evaluation
