import asyncio

import pytest
from typer.testing import CliRunner

import leadflow.cli as cli
import leadflow.persistence as persistence
from leadflow.adapters import InMemoryEntityRepository, InMemoryTemplateStore, RecordingEmailSender
from leadflow.cli import app
from leadflow.persistence import InMemoryWorkflowRepository
from leadflow.persistence.models import ExecutionStatus
from leadflow.service import WorkflowService

CATALOG = """
leads:
  - {id: lead-42, email: ana@example.com, status: NEW, attributes: {name: Ana}}
  - {id: lead-7, email: bruno@example.com, status: QUALIFIED, attributes: {name: Bruno}}
templates:
  templateA: {name: Welcome, subject: "Welcome {{name}}", html_body: "<p>Hi {{name}}</p>"}
  templateB: {name: Follow-up, subject: "Follow-up", html_body: "<p>Still there?</p>"}
"""

WORKFLOW = """
name: Welcome-2
description: Two step welcome sequence
trigger:
  kind: STATUS_CHANGED
  config: {status: QUALIFIED}
steps:
  - {template_ref: templateA, delay_hours: 0}
  - {template_ref: templateB, delay_hours: 24}
"""

runner = CliRunner()


@pytest.fixture
def repo(monkeypatch, tmp_path) -> InMemoryWorkflowRepository:
    catalog = tmp_path / "catalog.yaml"
    catalog.write_text(CATALOG)
    monkeypatch.setenv("LEADFLOW_CATALOG", str(catalog))
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _create_workflow(tmp_path) -> str:
    path = tmp_path / "welcome.yaml"
    path.write_text(WORKFLOW)
    result = runner.invoke(app, ["workflow", "create", str(path)])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Workflow created: Welcome-2" in result.output
    return result.output.split("ID: ")[1].strip()


def test_workflow_create_list_and_show(repo, tmp_path):
    workflow_id = _create_workflow(tmp_path)

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert workflow_id in result.output
    assert "STATUS_CHANGED" in result.output

    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert result.exit_code == 0
    assert "1. templateA after 0h" in result.output
    assert "2. templateB after 24h" in result.output
    assert "Executions: 0 total" in result.output


def test_workflow_show_missing(repo):
    result = runner.invoke(app, ["workflow", "show", "nope"])
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


def test_workflow_create_rejects_bad_file(repo, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("name: broken\n")
    result = runner.invoke(app, ["workflow", "create", str(path)])
    assert result.exit_code == 1
    assert "missing required keys: trigger, steps" in result.output


def test_deactivate_blocks_manual_start(repo, tmp_path):
    workflow_id = _create_workflow(tmp_path)

    result = runner.invoke(app, ["workflow", "deactivate", workflow_id])
    assert result.exit_code == 0
    result = runner.invoke(app, ["execution", "start", workflow_id, "lead-42"])
    assert result.exit_code == 1
    assert "WORKFLOW_INACTIVE_OR_MISSING" in result.output

    runner.invoke(app, ["workflow", "activate", workflow_id])
    result = runner.invoke(app, ["execution", "start", workflow_id, "lead-42", "lead-42"])
    assert result.exit_code == 0
    assert "lead-42: started" in result.output
    assert "DUPLICATE_EXECUTION" in result.output
    assert "2 total, 1 started, 1 errors" in result.output


def test_trigger_tick_pause_resume_and_show(repo, tmp_path):
    workflow_id = _create_workflow(tmp_path)

    result = runner.invoke(
        app, ["trigger", "fire", "lead-7", "STATUS_CHANGED", "--data", '{"newStatus": "QUALIFIED"}']
    )
    assert result.exit_code == 0, result.output
    execution_id = result.output.split("Started execution ")[1].strip()

    result = runner.invoke(app, ["scheduler", "tick"])
    assert result.exit_code == 0
    assert "1 executions processed" in result.output

    result = runner.invoke(app, ["execution", "show", execution_id])
    assert "RUNNING" in result.output
    assert "step 1 EMAIL_SENT: SUCCESS" in result.output

    result = runner.invoke(app, ["execution", "pause", execution_id])
    assert result.exit_code == 0
    assert f"Execution {execution_id} paused" in result.output
    result = runner.invoke(app, ["execution", "pause", execution_id])
    assert result.exit_code == 1
    assert "INVALID_TRANSITION" in result.output

    result = runner.invoke(app, ["execution", "list", "--status", "PAUSED"])
    assert execution_id in result.output
    assert "Showing 1 of 1" in result.output

    result = runner.invoke(app, ["execution", "resume", execution_id])
    assert result.exit_code == 0
    execution = asyncio.run(repo.get_execution(execution_id))
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.workflow_id == workflow_id

    result = runner.invoke(app, ["workflow", "stats", workflow_id])
    assert '"running":1' in result.output


def test_trigger_fire_rejects_bad_json(repo):
    result = runner.invoke(app, ["trigger", "fire", "lead-7", "STATUS_CHANGED", "--data", "{nope"])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_trigger_fire_without_match(repo):
    result = runner.invoke(app, ["trigger", "fire", "lead-7", "LEAD_CREATED"])
    assert result.exit_code == 0
    assert "No workflows matched" in result.output


def test_execution_show_missing(repo):
    result = runner.invoke(app, ["execution", "show", "nope"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output


class TrackingEmailSender(RecordingEmailSender):
    def __init__(self) -> None:
        super().__init__()
        self.disconnects = 0

    async def disconnect(self) -> None:
        self.disconnects += 1


def test_commands_release_the_email_sender(repo, monkeypatch):
    sender = TrackingEmailSender()

    def build_service():
        return WorkflowService(repo, InMemoryEntityRepository(), InMemoryTemplateStore(), sender)

    monkeypatch.setattr(cli, "get_service", build_service)

    assert runner.invoke(app, ["workflow", "list"]).exit_code == 0
    assert runner.invoke(app, ["scheduler", "tick"]).exit_code == 0
    assert runner.invoke(app, ["workflow", "show", "nope"]).exit_code == 1

    assert sender.disconnects == 3
