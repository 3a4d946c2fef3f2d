"""Persistence layer for stepflow runs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepflowConfig, load_config
from ..db import WorkflowDB, normalize_database_url
from ..models import Run, Step, Story
from .inmemory import InMemoryWorkflowRepository
from .repository import UnitOfWork, WorkflowRepository

_repository_instance: WorkflowRepository | None = None

_SUPPORTED_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``STEPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        if not isinstance(_repository_instance, InMemoryWorkflowRepository):
            _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if not database_url.startswith(_SUPPORTED_PREFIXES):
        raise ValueError(f"Unsupported database backend: {database_url}")

    # Same database as the current instance: keep it.
    if (
        isinstance(_repository_instance, WorkflowDB)
        and _repository_instance.database_url == normalize_database_url(database_url)
    ):
        return _repository_instance

    _repository_instance = WorkflowDB(database_url)
    return _repository_instance


__all__ = [
    "Run",
    "Step",
    "Story",
    "UnitOfWork",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "WorkflowDB",
    "get_repository",
]
