"""Interfaces of the engine's external collaborators."""

from __future__ import annotations

import abc
from typing import Optional

from ..contracts import EmailMessage, EmailTemplate, Lead, SendResult


class EntityRepository(metaclass=abc.ABCMeta):
    """Read-only access to the leads that trigger workflows."""

    @abc.abstractmethod
    async def get(self, entity_id: str) -> Optional[Lead]:
        """Return the lead or ``None`` when it does not exist."""
        raise NotImplementedError


class TemplateStore(metaclass=abc.ABCMeta):
    """Resolves a step's template reference to its content."""

    @abc.abstractmethod
    async def resolve(self, template_ref: str) -> Optional[EmailTemplate]:
        """Return the template or ``None`` when it does not exist."""
        raise NotImplementedError


class EmailSender(metaclass=abc.ABCMeta):
    """Delivers rendered emails through some provider."""

    async def connect(self) -> None:
        """Open provider connection (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close provider connection (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, message: EmailMessage) -> SendResult:
        """Send ``message``.

        Delivery problems are reported through ``SendResult.failed``; an
        adapter may instead raise ``SendFailure``, which is treated the same.
        """
        raise NotImplementedError
