"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from ..contracts import WorkflowDefinition
from .models import ExecutionLogEntry, ScheduledTask, TaskStatus, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    # definitions -------------------------------------------------------
    async def get_definition(self, workflow_type: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by type."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all stored definitions."""

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition."""

    # instances ---------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance.

        Raises ``DuplicateInstanceError`` when the account already has a
        non-terminal instance.
        """

    async def update_instance(
        self, instance_id: str, patch: dict[str, Any]
    ) -> WorkflowInstance | None:
        """Apply ``patch`` to the instance and return the stored result."""

    async def get_instance(self, account_id: str) -> WorkflowInstance | None:
        """Return the most recently started instance for the account."""

    async def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(
        self, statuses: Iterable[str] | None = None
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered by status."""

    async def list_recoverable(self) -> list[WorkflowInstance]:
        """Return instances left ``active`` or ``recovering``."""

    # scheduled tasks ---------------------------------------------------
    async def create_scheduled_task(self, task: ScheduledTask) -> ScheduledTask:
        """Persist a new scheduled task."""

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        """Retrieve a scheduled task by id."""

    async def get_due_tasks(self, now: datetime, limit: int = 100) -> list[ScheduledTask]:
        """Return pending tasks with ``scheduled_for <= now``, oldest first."""

    async def list_tasks(
        self, instance_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[ScheduledTask]:
        """Return tasks of an instance, optionally by status, by fire time."""

    async def claim_scheduled_task(self, task_id: str) -> bool:
        """Atomically move a task from pending to running.

        Returns ``True`` only for the single caller that won the claim.
        """

    async def update_scheduled_task(self, task_id: str, status: TaskStatus) -> None:
        """Set the status of a task."""

    async def cancel_pending_tasks(
        self, instance_id: str, include_running: bool = False
    ) -> int:
        """Cancel pending (and optionally running) tasks of an instance."""

    async def count_tasks(self, status: TaskStatus | None = None) -> int:
        """Count tasks, optionally by status."""

    async def delete_finished_tasks(self, before: datetime) -> int:
        """Delete completed, failed and cancelled tasks created before ``before``."""

    # execution log -----------------------------------------------------
    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        """Append an execution log entry."""

    async def list_execution_log(self, instance_id: str) -> list[ExecutionLogEntry]:
        """Return log entries for an instance in insertion order."""

    # locks -------------------------------------------------------------
    async def acquire_lock(self, key: str, holder: str, ttl_seconds: float) -> bool:
        """Insert the lock if absent or expired; ``True`` when acquired."""

    async def release_lock(self, key: str, holder: str) -> bool:
        """Delete the lock if held by ``holder``."""

    async def get_lock_holder(self, key: str) -> str | None:
        """Return the live holder of ``key`` if any."""

    async def release_locks_by_holder(self, holder: str) -> int:
        """Delete every lock held by ``holder``."""

    async def cleanup_expired_locks(self) -> int:
        """Delete expired locks and return how many were reaped."""

    async def ping(self) -> bool:
        """Cheap connectivity check."""
