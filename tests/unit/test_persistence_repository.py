from datetime import datetime, timedelta, timezone

import pytest

from leadflow.errors import ConcurrentModification, DuplicateExecution, ExecutionNotFound
from leadflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from leadflow.persistence.models import (
    ExecutionStatus,
    LogAction,
    LogEntry,
    LogStatus,
    TriggerKind,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
    else:
        repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repo
        repo.close()


def _workflow(kind=TriggerKind.MANUAL, active=True, created_at=NOW) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="Welcome-3",
        active=active,
        trigger={"kind": kind, "config": {"status": "QUALIFIED"}},
        steps=[
            WorkflowStep(order=1, template_ref="templateA"),
            WorkflowStep(
                order=2,
                template_ref="templateB",
                delay_hours=24,
                conditions=[{"kind": "has_any_tag", "tags": ["vip"]}],
            ),
        ],
        created_at=created_at,
    )


def _execution(workflow_id, entity_id="lead-42", next_step_at=NOW, started_at=NOW, **kw):
    return WorkflowExecution(
        workflow_id=workflow_id,
        entity_id=entity_id,
        status=kw.pop("status", ExecutionStatus.RUNNING),
        next_step_at=next_step_at,
        started_at=started_at,
        trigger_data={"trigger": "MANUAL"},
        **kw,
    )


@pytest.mark.asyncio
async def test_workflow_crud(repo):
    wf = _workflow()
    older = _workflow(kind=TriggerKind.LEAD_CREATED, active=False, created_at=NOW - timedelta(days=1))
    await repo.create_workflow(wf)
    await repo.create_workflow(older)

    assert await repo.get_workflow(wf.id) == wf
    assert await repo.get_workflow("missing") is None
    assert [w.id for w in await repo.list_workflows()] == [wf.id, older.id]
    assert [w.id for w in await repo.list_workflows(active_only=True)] == [wf.id]
    assert [w.id for w in await repo.list_workflows(trigger_kind=TriggerKind.LEAD_CREATED)] == [
        older.id
    ]

    assert await repo.set_workflow_active(older.id, True)
    assert (await repo.get_workflow(older.id)).active
    assert not await repo.set_workflow_active("missing", True)


@pytest.mark.asyncio
async def test_execution_round_trip(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    execution = _execution(wf.id)
    execution.log.append(
        LogEntry(
            timestamp=NOW,
            action=LogAction.EMAIL_SENT,
            step=1,
            template="Welcome",
            recipient="ana@example.com",
            status=LogStatus.SUCCESS,
        )
    )
    await repo.create_execution(execution)

    stored = await repo.get_execution(execution.id)
    assert stored == execution
    assert await repo.get_execution("missing") is None


@pytest.mark.asyncio
async def test_only_one_running_execution_per_pair(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    first = _execution(wf.id)
    await repo.create_execution(first)

    with pytest.raises(DuplicateExecution):
        await repo.create_execution(_execution(wf.id))

    await repo.create_execution(_execution(wf.id, status=ExecutionStatus.COMPLETED))
    await repo.create_execution(_execution(wf.id, entity_id="lead-7"))

    paused = await repo.get_execution(first.id)
    paused.status = ExecutionStatus.PAUSED
    await repo.save_execution(paused, paused.version)
    second = _execution(wf.id)
    await repo.create_execution(second)

    paused.status = ExecutionStatus.RUNNING
    with pytest.raises(DuplicateExecution):
        await repo.save_execution(paused, paused.version + 1)
    assert (await repo.get_execution(first.id)).status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_claim_is_exclusive_until_lease_expires(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    due = _execution(wf.id)
    later = _execution(wf.id, entity_id="lead-7", next_step_at=NOW + timedelta(hours=1))
    paused = _execution(wf.id, entity_id="lead-8", status=ExecutionStatus.PAUSED)
    for e in (due, later, paused):
        await repo.create_execution(e)

    lease = NOW + timedelta(minutes=5)
    [claimed] = await repo.claim_due_executions(NOW, lease, 10)
    assert claimed.id == due.id
    assert claimed.version == due.version + 1
    assert claimed.locked_until == lease

    assert await repo.claim_due_executions(NOW + timedelta(minutes=1), lease, 10) == []
    reclaimed = await repo.claim_due_executions(lease, lease + timedelta(minutes=5), 10)
    assert [e.id for e in reclaimed] == [due.id]


@pytest.mark.asyncio
async def test_claim_respects_limit_and_due_order(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    executions = [
        _execution(wf.id, entity_id=f"lead-{i}", next_step_at=NOW - timedelta(minutes=i))
        for i in range(3)
    ]
    for e in executions:
        await repo.create_execution(e)

    claimed = await repo.claim_due_executions(NOW, NOW + timedelta(minutes=5), 2)

    assert [e.entity_id for e in claimed] == ["lead-2", "lead-1"]


@pytest.mark.asyncio
async def test_save_is_compare_and_swap(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    execution = _execution(wf.id)
    await repo.create_execution(execution)

    execution.current_step = 1
    saved = await repo.save_execution(execution, 0)
    assert saved.version == 1
    assert saved.current_step == 1

    execution.current_step = 2
    with pytest.raises(ConcurrentModification):
        await repo.save_execution(execution, 0)
    assert (await repo.get_execution(execution.id)).current_step == 1

    with pytest.raises(ExecutionNotFound):
        await repo.save_execution(_execution(wf.id, entity_id="ghost"), 0)


@pytest.mark.asyncio
async def test_listing_counts_and_paging(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    ids = []
    for i, status in enumerate(
        [ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED, ExecutionStatus.FAILED]
    ):
        e = _execution(wf.id, entity_id=f"lead-{i}", status=status, started_at=NOW + timedelta(minutes=i))
        await repo.create_execution(e)
        ids.append(e.id)

    assert [e.id for e in await repo.list_executions(limit=2)] == [ids[2], ids[1]]
    assert [e.id for e in await repo.list_executions(limit=2, offset=2)] == [ids[0]]
    assert [e.id for e in await repo.list_executions(status=ExecutionStatus.COMPLETED)] == [ids[1]]
    assert await repo.count_executions(workflow_id=wf.id) == 3
    assert await repo.count_executions(workflow_id="other") == 0
    assert await repo.count_by_status(wf.id) == {
        ExecutionStatus.RUNNING: 1,
        ExecutionStatus.COMPLETED: 1,
        ExecutionStatus.FAILED: 1,
    }


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    wf = _workflow()
    await repo.create_workflow(wf)
    execution = _execution(wf.id)
    await repo.create_execution(execution)
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert await reopened.get_workflow(wf.id) == wf
    assert (await reopened.get_execution(execution.id)).next_step_at == NOW
    with pytest.raises(DuplicateExecution):
        await reopened.create_execution(_execution(wf.id))
    reopened.close()
