"""Persistence layer for jobflow jobs."""

from __future__ import annotations

from typing import Optional

from ..config import JobflowConfig, load_config
from ..errors import ConfigurationError
from .inmemory import InMemoryWorkflowRepository
from .repository import MutationFn, WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[JobflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url``, which can be given
    explicitly or taken from the loaded configuration (where
    ``JOBFLOW_DATABASE_URL``/``DATABASE_URL`` already apply). Without a
    database an in-memory repository is returned and reused.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        raise ConfigurationError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "MutationFn",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
