"""In-process adapters for development and tests."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from ..contracts import EmailMessage, EmailTemplate, Lead, SendResult
from .base import EmailSender, EntityRepository, TemplateStore

logger = logging.getLogger(__name__)


class InMemoryEntityRepository(EntityRepository):
    """Dictionary-backed lead lookup."""

    def __init__(self, leads: Iterable[Lead] = ()) -> None:
        self._leads: Dict[str, Lead] = {lead.id: lead for lead in leads}

    def add(self, lead: Lead) -> None:
        self._leads[lead.id] = lead

    async def get(self, entity_id: str) -> Optional[Lead]:
        return self._leads.get(entity_id)


class InMemoryTemplateStore(TemplateStore):
    """Dictionary-backed template lookup keyed by template reference."""

    def __init__(self, templates: Optional[Dict[str, EmailTemplate]] = None) -> None:
        self._templates: Dict[str, EmailTemplate] = dict(templates or {})

    def add(self, ref: str, template: EmailTemplate) -> None:
        self._templates[ref] = template

    async def resolve(self, template_ref: str) -> Optional[EmailTemplate]:
        return self._templates.get(template_ref)


def load_catalog(path: str | Path) -> tuple[InMemoryEntityRepository, InMemoryTemplateStore]:
    """Build lead and template stores from a YAML catalog.

    The file holds a ``leads`` list and a ``templates`` mapping::

        leads:
          - {id: lead-42, email: ana@example.com, status: NEW, tags: [vip]}
        templates:
          welcome:
            subject: "Hi {{name}}"
            html_body: "<p>Welcome {{name}}</p>"
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    leads = [Lead(**item) for item in data.get("leads", [])]
    templates = {
        ref: EmailTemplate(name=item.get("name", ref), **{k: v for k, v in item.items() if k != "name"})
        for ref, item in (data.get("templates") or {}).items()
    }
    return InMemoryEntityRepository(leads), InMemoryTemplateStore(templates)


class RecordingEmailSender(EmailSender):
    """Keep sent messages in memory; optionally fail for given recipients."""

    def __init__(self, fail_for: Iterable[str] = (), error: str = "Simulated failure") -> None:
        self.sent: List[EmailMessage] = []
        self.fail_for = set(fail_for)
        self.error = error

    async def send(self, message: EmailMessage) -> SendResult:
        if message.to in self.fail_for:
            return SendResult.failed(self.error)
        self.sent.append(message)
        return SendResult.ok(message_id=str(uuid.uuid4()))


class LoggingEmailSender(EmailSender):
    """Simulate delivery by logging the message."""

    async def send(self, message: EmailMessage) -> SendResult:
        message_id = str(uuid.uuid4())
        logger.info(f"Simulated email to {message.to}: {message.subject!r} (id={message_id})")
        return SendResult.ok(message_id=message_id)
