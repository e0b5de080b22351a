"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable

from ..contracts import WorkflowDefinition
from ..errors import DuplicateInstanceError
from ..utils.clock import utcnow
from .models import (
    INSTANCE_FIELDS,
    LIVE_STATUSES,
    ExecutionLogEntry,
    Lock,
    ScheduledTask,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .repository import WorkflowRepository

FINISHED_TASK_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


def apply_patch(instance: WorkflowInstance, patch: dict[str, Any]) -> WorkflowInstance:
    """Return a validated copy of ``instance`` with ``patch`` applied."""
    unknown = set(patch) - INSTANCE_FIELDS
    if unknown:
        raise ValueError(f"Unknown instance fields in patch: {sorted(unknown)}")
    data = instance.model_dump()
    data.update(patch)
    return WorkflowInstance.model_validate(data)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method completes without
    suspending, so each call is atomic with respect to the event loop.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, ScheduledTask] = {}
        self._log: list[ExecutionLogEntry] = []
        self._locks: Dict[str, Lock] = {}
        self._log_id = 0

    # ------------------------------------------------------------------
    async def get_definition(self, workflow_type: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_type)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.type] = definition.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        for existing in self._instances.values():
            if existing.account_id == instance.account_id and existing.status in LIVE_STATUSES:
                raise DuplicateInstanceError(
                    f"Account {instance.account_id} already has workflow {existing.id} "
                    f"in status {existing.status.value}"
                )
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance.model_copy(deep=True)

    async def update_instance(
        self, instance_id: str, patch: dict[str, Any]
    ) -> WorkflowInstance | None:
        current = self._instances.get(instance_id)
        if current is None:
            return None
        updated = apply_patch(current, patch)
        self._instances[instance_id] = updated
        return updated.model_copy(deep=True)

    async def get_instance(self, account_id: str) -> WorkflowInstance | None:
        matches = [i for i in self._instances.values() if i.account_id == account_id]
        if not matches:
            return None
        latest = max(matches, key=lambda i: i.started_at)
        return latest.model_copy(deep=True)

    async def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self, statuses: Iterable[str] | None = None
    ) -> list[WorkflowInstance]:
        wanted = {WorkflowStatus(s) for s in statuses} if statuses is not None else None
        return [
            i.model_copy(deep=True)
            for i in sorted(self._instances.values(), key=lambda i: i.started_at)
            if wanted is None or i.status in wanted
        ]

    async def list_recoverable(self) -> list[WorkflowInstance]:
        return await self.list_instances(
            [WorkflowStatus.ACTIVE.value, WorkflowStatus.RECOVERING.value]
        )

    # ------------------------------------------------------------------
    async def create_scheduled_task(self, task: ScheduledTask) -> ScheduledTask:
        self._tasks[task.task_id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def get_due_tasks(self, now: datetime, limit: int = 100) -> list[ScheduledTask]:
        due = [
            t
            for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and t.scheduled_for <= now
        ]
        due.sort(key=lambda t: t.scheduled_for)
        return [t.model_copy(deep=True) for t in due[:limit]]

    async def list_tasks(
        self, instance_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[ScheduledTask]:
        wanted = {TaskStatus(s) for s in statuses} if statuses is not None else None
        tasks = [
            t
            for t in self._tasks.values()
            if t.workflow_instance_id == instance_id and (wanted is None or t.status in wanted)
        ]
        tasks.sort(key=lambda t: t.scheduled_for)
        return [t.model_copy(deep=True) for t in tasks]

    async def claim_scheduled_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        task.status = TaskStatus.RUNNING
        task.updated_at = utcnow()
        return True

    async def update_scheduled_task(self, task_id: str, status: TaskStatus) -> None:
        task = self._tasks.get(task_id)
        if task:
            task.status = TaskStatus(status)
            task.updated_at = utcnow()

    async def cancel_pending_tasks(
        self, instance_id: str, include_running: bool = False
    ) -> int:
        cancellable = {TaskStatus.PENDING}
        if include_running:
            cancellable.add(TaskStatus.RUNNING)
        count = 0
        for task in self._tasks.values():
            if task.workflow_instance_id == instance_id and task.status in cancellable:
                task.status = TaskStatus.CANCELLED
                task.updated_at = utcnow()
                count += 1
        return count

    async def count_tasks(self, status: TaskStatus | None = None) -> int:
        if status is None:
            return len(self._tasks)
        return sum(1 for t in self._tasks.values() if t.status == status)

    async def delete_finished_tasks(self, before: datetime) -> int:
        doomed = [
            task_id
            for task_id, t in self._tasks.items()
            if t.status in FINISHED_TASK_STATUSES and t.created_at < before
        ]
        for task_id in doomed:
            del self._tasks[task_id]
        return len(doomed)

    # ------------------------------------------------------------------
    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        self._log_id += 1
        stored = entry.model_copy(update={"id": self._log_id}, deep=True)
        self._log.append(stored)
        return stored.model_copy(deep=True)

    async def list_execution_log(self, instance_id: str) -> list[ExecutionLogEntry]:
        return [
            e.model_copy(deep=True) for e in self._log if e.workflow_instance_id == instance_id
        ]

    # ------------------------------------------------------------------
    async def acquire_lock(self, key: str, holder: str, ttl_seconds: float) -> bool:
        now = utcnow()
        current = self._locks.get(key)
        if current is not None and current.expires_at > now:
            return False
        self._locks[key] = Lock(
            key=key,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        return True

    async def release_lock(self, key: str, holder: str) -> bool:
        current = self._locks.get(key)
        if current is None or current.holder != holder:
            return False
        del self._locks[key]
        return True

    async def get_lock_holder(self, key: str) -> str | None:
        current = self._locks.get(key)
        if current is None or current.expires_at <= utcnow():
            return None
        return current.holder

    async def release_locks_by_holder(self, holder: str) -> int:
        doomed = [k for k, lock in self._locks.items() if lock.holder == holder]
        for key in doomed:
            del self._locks[key]
        return len(doomed)

    async def cleanup_expired_locks(self) -> int:
        now = utcnow()
        doomed = [k for k, lock in self._locks.items() if lock.expires_at <= now]
        for key in doomed:
            del self._locks[key]
        return len(doomed)

    async def ping(self) -> bool:
        return True
