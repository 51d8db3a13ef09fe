"""Simple example running a three step welcome sequence in memory."""

import asyncio
from datetime import timedelta

from leadflow import (
    EmailTemplate,
    InMemoryEntityRepository,
    InMemoryTemplateStore,
    InMemoryWorkflowRepository,
    Lead,
    LoggingEmailSender,
    WorkflowService,
)
from leadflow.persistence.models import utcnow


async def main():
    """Create a workflow, fire a lead event and drive the scheduler with a fake clock."""
    now = utcnow()

    def clock():
        return now

    leads = InMemoryEntityRepository(
        [Lead(id="lead-42", email="ana@example.com", status="NEW", attributes={"name": "Ana"})]
    )
    templates = InMemoryTemplateStore(
        {
            "welcome": EmailTemplate(name="Welcome", subject="Welcome {{name}}", html_body="<p>Hi</p>"),
            "tips": EmailTemplate(name="Tips", subject="Three tips, {{name}}", html_body="<p>Tips</p>"),
            "offer": EmailTemplate(name="Offer", subject="An offer for you", html_body="<p>10%</p>"),
        }
    )
    service = WorkflowService(
        InMemoryWorkflowRepository(), leads, templates, LoggingEmailSender(), clock=clock
    )

    workflow = await service.create_workflow(
        name="Welcome-3",
        trigger={"kind": "LEAD_CREATED"},
        steps=[
            {"template_ref": "welcome", "delay_hours": 0},
            {"template_ref": "tips", "delay_hours": 24},
            {"template_ref": "offer", "delay_hours": 72},
        ],
    )
    evaluation = await service.evaluate_triggers("lead-42", "LEAD_CREATED")
    execution_id = evaluation.started[0]

    for hours in (0, 24, 72):
        now += timedelta(hours=hours)
        result = await service.process_scheduled_steps()
        print(f"+{hours}h: {result.processed_count} executions processed")

    execution = await service.get_execution(execution_id)
    print(f"Workflow {workflow.name}: execution {execution.id} is {execution.status.value}")
    for entry in execution.log:
        print(f"  step {entry.step}: {entry.action.value} {entry.template} -> {entry.recipient}")


if __name__ == "__main__":
    asyncio.run(main())
