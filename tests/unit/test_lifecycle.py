"""Execution lifecycle through the public service API."""

from datetime import timedelta

import pytest

from leadflow.errors import InvalidWorkflowDefinition
from leadflow.persistence.models import ExecutionStatus


@pytest.mark.asyncio
async def test_create_workflow_assigns_step_orders(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)

    assert [s.order for s in wf.steps] == [1, 2, 3]
    assert wf.active
    assert wf.version == 1
    assert await service.get_workflow(wf.id) == wf


@pytest.mark.asyncio
async def test_create_workflow_rejects_bad_definition(service):
    with pytest.raises(InvalidWorkflowDefinition):
        await service.create_workflow("bad", {"kind": "NOT_A_TRIGGER"}, [{"template_ref": "a"}])
    with pytest.raises(InvalidWorkflowDefinition):
        await service.create_workflow("bad", {"kind": "MANUAL"}, [{"delay_hours": 1}])
    assert await service.list_workflows() == []


@pytest.mark.asyncio
async def test_start_sets_initial_state(service, clock, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)

    result = await service.start_workflow_execution(wf.id, "lead-42", {"trigger": "MANUAL"})

    assert result.success
    execution = result.execution
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.current_step == 0
    assert execution.next_step_at == clock.now
    assert execution.started_at == clock.now
    assert execution.log == []
    assert execution.trigger_data == {"trigger": "MANUAL"}


@pytest.mark.asyncio
async def test_duplicate_running_execution_is_rejected(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    first = await service.start_workflow_execution(wf.id, "lead-42")

    second = await service.start_workflow_execution(wf.id, "lead-42")

    assert first.success
    assert not second.success
    assert second.error_code == "DUPLICATE_EXECUTION"
    assert (await service.list_executions(workflow_id=wf.id)).total == 1


@pytest.mark.asyncio
async def test_inactive_or_missing_workflow_cannot_start(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    assert await service.set_workflow_active(wf.id, False)

    inactive = await service.start_workflow_execution(wf.id, "lead-42")
    missing = await service.start_workflow_execution("no-such-workflow", "lead-42")

    assert inactive.error_code == "WORKFLOW_INACTIVE_OR_MISSING"
    assert missing.error_code == "WORKFLOW_INACTIVE_OR_MISSING"
    assert not await service.set_workflow_active("no-such-workflow", True)


@pytest.mark.asyncio
async def test_deactivation_does_not_stop_running_executions(service, sender, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    result = await service.start_workflow_execution(wf.id, "lead-42")
    await service.set_workflow_active(wf.id, False)

    await service.process_scheduled_steps()

    assert len(sender.sent) == 1
    assert (await service.get_execution(result.execution.id)).current_step == 1


@pytest.mark.asyncio
async def test_pause_and_resume_restarts_wait(service, sender, clock, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    execution_id = (await service.start_workflow_execution(wf.id, "lead-42")).execution.id
    await service.process_scheduled_steps()

    paused = await service.pause_workflow_execution(execution_id)
    assert paused.success
    assert paused.execution.status == ExecutionStatus.PAUSED
    assert paused.execution.next_step_at is None

    clock.advance(hours=48)
    assert (await service.process_scheduled_steps()).processed_count == 0
    assert len(sender.sent) == 1

    resumed = await service.resume_workflow_execution(execution_id)
    assert resumed.success
    assert resumed.execution.status == ExecutionStatus.RUNNING
    assert resumed.execution.current_step == 1
    assert resumed.execution.next_step_at == clock.now + timedelta(hours=24)


@pytest.mark.asyncio
async def test_invalid_transitions(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    execution_id = (await service.start_workflow_execution(wf.id, "lead-42")).execution.id

    resume_running = await service.resume_workflow_execution(execution_id)
    await service.pause_workflow_execution(execution_id)
    pause_paused = await service.pause_workflow_execution(execution_id)
    missing = await service.pause_workflow_execution("nope")

    assert resume_running.error_code == "INVALID_TRANSITION"
    assert pause_paused.error_code == "INVALID_TRANSITION"
    assert missing.error_code == "EXECUTION_NOT_FOUND"


@pytest.mark.asyncio
async def test_terminal_executions_cannot_be_paused(service):
    wf = await service.create_workflow("One", {"kind": "MANUAL"}, [{"template_ref": "templateA"}])
    execution_id = (await service.start_workflow_execution(wf.id, "lead-42")).execution.id
    await service.process_scheduled_steps()

    result = await service.pause_workflow_execution(execution_id)

    assert result.error_code == "INVALID_TRANSITION"
    assert (await service.get_execution(execution_id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_paused_execution_allows_new_start_but_blocks_resume(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    first = (await service.start_workflow_execution(wf.id, "lead-42")).execution.id
    await service.pause_workflow_execution(first)

    second = await service.start_workflow_execution(wf.id, "lead-42")
    resumed = await service.resume_workflow_execution(first)

    assert second.success
    assert resumed.error_code == "DUPLICATE_EXECUTION"
    assert (await service.get_execution(first)).status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_new_execution_after_completion(service):
    wf = await service.create_workflow("One", {"kind": "MANUAL"}, [{"template_ref": "templateA"}])
    await service.start_workflow_execution(wf.id, "lead-42")
    await service.process_scheduled_steps()

    again = await service.start_workflow_execution(wf.id, "lead-42")

    assert again.success


@pytest.mark.asyncio
async def test_start_for_entities_reports_each_entity(service, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    await service.start_workflow_execution(wf.id, "lead-42")

    summary = await service.start_for_entities(wf.id, ["lead-42", "lead-7"])

    assert (summary.total, summary.success, summary.errors) == (2, 1, 1)
    by_entity = {r.entity_id: r.result for r in summary.results}
    assert by_entity["lead-42"].error_code == "DUPLICATE_EXECUTION"
    assert by_entity["lead-7"].execution.trigger_data == {"trigger": "MANUAL"}


@pytest.mark.asyncio
async def test_stats_and_paging(service, clock, welcome_steps):
    wf = await service.create_workflow("Welcome-3", {"kind": "MANUAL"}, welcome_steps)
    ids = []
    for entity_id in ("lead-42", "lead-7", "lead-99"):
        ids.append((await service.start_workflow_execution(wf.id, entity_id)).execution.id)
        clock.advance(minutes=1)
    await service.pause_workflow_execution(ids[1])
    # lead-99 is unknown to the entity store and fails critically
    await service.process_scheduled_steps()

    stats = await service.get_workflow_stats(wf.id)
    assert (stats.total, stats.running, stats.paused, stats.failed, stats.completed) == (3, 1, 1, 1, 0)

    page = await service.list_executions(workflow_id=wf.id, limit=2)
    assert [e.id for e in page.executions] == [ids[2], ids[1]]
    assert page.total == 3 and page.has_more

    rest = await service.list_executions(workflow_id=wf.id, limit=2, offset=2)
    assert [e.id for e in rest.executions] == [ids[0]]
    assert not rest.has_more

    paused = await service.list_executions(status=ExecutionStatus.PAUSED)
    assert [e.id for e in paused.executions] == [ids[1]]
