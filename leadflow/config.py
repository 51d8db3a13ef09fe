from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_SCHEDULER_INTERVAL_SECONDS,
)


class SchedulerConfig(BaseModel):
    """Settings for the scheduler loop."""

    interval_seconds: float = DEFAULT_SCHEDULER_INTERVAL_SECONDS
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    concurrency: int = Field(default=1, ge=1)


class RetryConfig(BaseModel):
    """Bounded retry of failed sends. One attempt means no retry."""

    max_attempts: int = Field(default=1, ge=1)
    base_delay_seconds: float = 60.0
    backoff_base: float = 2.0


class HttpEmailConfig(BaseModel):
    """Configuration for the HTTP email provider adapter."""

    url: str = "http://localhost:8025/api/send"
    api_key: Optional[str] = None
    from_address: str = "noreply@example.com"
    timeout: float = 10.0


class EmailConfig(BaseModel):
    backend: Literal["log", "http"] = "log"
    http: HttpEmailConfig = HttpEmailConfig()


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    catalog_path: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    email: EmailConfig = EmailConfig()


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_catalog = os.getenv("LEADFLOW_CATALOG")
    if env_catalog:
        config.catalog_path = env_catalog
    return config
