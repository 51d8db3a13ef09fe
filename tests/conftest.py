"""Shared fixtures for leadflow tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import leadflow.persistence as persistence
from leadflow.adapters import InMemoryEntityRepository, InMemoryTemplateStore, RecordingEmailSender
from leadflow.contracts import EmailTemplate, Lead
from leadflow.persistence import InMemoryWorkflowRepository
from leadflow.service import WorkflowService


class FakeClock:
    """Controllable clock injected wherever the engine reads the time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


WELCOME_STEPS = [
    {"template_ref": "templateA", "delay_hours": 0},
    {"template_ref": "templateB", "delay_hours": 24},
    {"template_ref": "templateC", "delay_hours": 72},
]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in (
        "LEADFLOW_CONFIG",
        "LEADFLOW_DATABASE_URL",
        "DATABASE_URL",
        "LEADFLOW_CATALOG",
        "LEADFLOW_EMAIL_BACKEND",
        "LEADFLOW_EMAIL_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def leads() -> InMemoryEntityRepository:
    return InMemoryEntityRepository(
        [
            Lead(
                id="lead-42",
                email="ana@example.com",
                status="NEW",
                source="website",
                tags=["newsletter"],
                attributes={"name": "Ana", "company": "Acme"},
            ),
            Lead(
                id="lead-7",
                email="bruno@example.com",
                status="QUALIFIED",
                source="referral",
                attributes={"name": "Bruno", "score": 80},
            ),
        ]
    )


@pytest.fixture
def templates() -> InMemoryTemplateStore:
    return InMemoryTemplateStore(
        {
            "templateA": EmailTemplate(
                name="Welcome",
                subject="Welcome {{name}}",
                html_body="<p>Hi {{name}} from {{company}}</p>",
                text_body="Hi {{name}}",
            ),
            "templateB": EmailTemplate(
                name="Follow-up", subject="Still there, {{name}}?", html_body="<p>{{phone}}</p>"
            ),
            "templateC": EmailTemplate(
                name="Last call", subject="Last call", html_body="<p>Bye {{name}}</p>"
            ),
        }
    )


@pytest.fixture
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def service(repository, leads, templates, sender, clock) -> WorkflowService:
    return WorkflowService(repository, leads, templates, sender, clock=clock)


@pytest.fixture
def welcome_steps() -> list[dict]:
    return [dict(step) for step in WELCOME_STEPS]
