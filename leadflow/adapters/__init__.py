"""Adapter factories and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, load_config
from .base import EmailSender, EntityRepository, TemplateStore
from .inmemory import (
    InMemoryEntityRepository,
    InMemoryTemplateStore,
    LoggingEmailSender,
    RecordingEmailSender,
    load_catalog,
)


def get_email_sender(
    backend: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> EmailSender:
    """Factory function to get the configured email sender."""

    config = config or load_config()
    backend = (backend or os.getenv("LEADFLOW_EMAIL_BACKEND") or config.email.backend).lower()

    if backend == "log":
        return LoggingEmailSender()
    elif backend == "http":
        from .http import HttpEmailSender

        http_conf = config.email.http
        return HttpEmailSender(
            url=http_conf.url,
            from_address=http_conf.from_address,
            api_key=os.getenv("LEADFLOW_EMAIL_API_KEY") or http_conf.api_key,
            timeout=http_conf.timeout,
        )
    else:
        raise ValueError(f"Unsupported email backend: {backend}")


def get_catalog(
    config: Optional[LeadflowConfig] = None,
) -> tuple[EntityRepository, TemplateStore]:
    """Return lead and template stores loaded from the configured catalog file."""

    config = config or load_config()
    if config.catalog_path:
        return load_catalog(config.catalog_path)
    return InMemoryEntityRepository(), InMemoryTemplateStore()


__all__ = [
    "EmailSender",
    "EntityRepository",
    "TemplateStore",
    "InMemoryEntityRepository",
    "InMemoryTemplateStore",
    "LoggingEmailSender",
    "RecordingEmailSender",
    "get_catalog",
    "get_email_sender",
    "load_catalog",
]
