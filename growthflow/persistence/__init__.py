"""Persistence layer for growthflow workflows."""

from __future__ import annotations

from typing import Optional

from ..config import GrowthflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ExecutionLogEntry,
    ScheduledTask,
    TaskKind,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[GrowthflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url``, which can be given
    explicitly or taken from configuration (where ``GROWTHFLOW_DATABASE_URL``
    and ``DATABASE_URL`` already apply). With no database configured an
    in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url or database_url == "memory://":
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available; install growthflow[postgres]")
        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "ExecutionLogEntry",
    "ScheduledTask",
    "TaskKind",
    "TaskStatus",
    "WorkflowInstance",
    "WorkflowStatus",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "reset_repository",
]
