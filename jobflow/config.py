from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CREATE_PERMISSION,
    DEFAULT_MIN_REASON_LENGTH,
    DEFAULT_MIN_TITLE_LENGTH,
    DEFAULT_PRIVILEGED_ROLES,
    DEFAULT_REOPEN_STEPS,
    DEFAULT_STALE_AFTER_DAYS,
    DEFAULT_STEP_CATALOGUE,
    DEFAULT_TERMINAL_STEP,
)


def _privileged() -> List[str]:
    return list(DEFAULT_PRIVILEGED_ROLES)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Notification transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RoleMatrixConfig(BaseModel):
    """Roles treated as privileged for each transition."""

    assign: List[str] = Field(default_factory=_privileged)
    reassign: List[str] = Field(default_factory=_privileged)
    finalize: List[str] = Field(default_factory=_privileged)
    reopen: List[str] = Field(default_factory=_privileged)
    edit_step_name: List[str] = Field(default_factory=lambda: ["Admin"])
    update_job: List[str] = Field(default_factory=_privileged)
    comment: List[str] = Field(default_factory=_privileged)


class WorkflowConfig(BaseModel):
    """Business rules for the job step machine."""

    terminal_step: str = DEFAULT_TERMINAL_STEP
    min_reason_length: int = DEFAULT_MIN_REASON_LENGTH
    min_title_length: int = DEFAULT_MIN_TITLE_LENGTH
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS
    create_permission: str = DEFAULT_CREATE_PERMISSION
    roles: RoleMatrixConfig = RoleMatrixConfig()
    view_all_roles: List[str] = Field(default_factory=lambda: _privileged() + ["Manager"])
    unassigned_steps: Dict[str, List[str]] = Field(
        default_factory=lambda: {DEFAULT_TERMINAL_STEP: _privileged()}
    )
    required_metadata: Dict[str, List[str]] = Field(
        default_factory=lambda: {"JMS no created": ["jms_no"]}
    )
    step_catalogue: List[str] = Field(default_factory=lambda: list(DEFAULT_STEP_CATALOGUE))
    reopen_steps: List[str] = Field(default_factory=lambda: list(DEFAULT_REOPEN_STEPS))


class UserEntry(BaseModel):
    id: str
    name: str
    role: str
    project_ids: List[str] = Field(default_factory=list)


class DirectoryConfig(BaseModel):
    """Static user directory used when no external one is wired in."""

    current_user: Optional[str] = None
    users: List[UserEntry] = Field(default_factory=list)
    permissions: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            role: [DEFAULT_CREATE_PERMISSION] for role in DEFAULT_PRIVILEGED_ROLES
        }
    )


class JobflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    workflow: WorkflowConfig = WorkflowConfig()
    directory: DirectoryConfig = DirectoryConfig()


def load_config(path: Optional[str] = None) -> JobflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to JOBFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("JOBFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = JobflowConfig(**data)
    else:
        config = JobflowConfig()

    env_db_url = os.getenv("JOBFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("JOBFLOW_TRANSPORT")
    if env_transport:
        config.transport = TransportConfig(backend=env_transport, redis=config.transport.redis)
    return config
