"""Rebuild scheduling state for in-flight workflows after a restart."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from .definitions import DefinitionCache
from .events import EventBus, EventType, WorkflowEvent
from .locks import LockService
from .persistence.models import (
    ScheduledTask,
    TaskKind,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .persistence.repository import WorkflowRepository
from .scheduling import SchedulingService
from .utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class RecoveryService:
    """Re-arm every ``active`` or ``recovering`` instance on startup.

    Each instance is first marked ``recovering`` and only flipped back to
    ``active`` once its step is re-armed, so a crash half-way through a pass
    leaves rows that the next boot picks up again. Overdue steps are armed
    to fire immediately. Unfinished parallel steps are re-queued.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        scheduling: SchedulingService,
        definitions: DefinitionCache,
        locks: LockService,
        events: Optional[EventBus] = None,
        on_recovered: Optional[Callable[[WorkflowInstance], Awaitable[None]]] = None,
        on_dropped: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self._repository = repository
        self._scheduling = scheduling
        self._definitions = definitions
        self._locks = locks
        self._events = events or EventBus()
        self._on_recovered = on_recovered
        self._on_dropped = on_dropped

    async def recover_all(self) -> int:
        instances = await self._repository.list_recoverable()
        if not instances:
            logger.info("No workflows to recover")
            return 0
        logger.info(f"Recovering {len(instances)} workflows")
        recovered = 0
        for instance in instances:
            try:
                async with self._locks.step_lock(instance.account_id):
                    if await self._recover(instance):
                        recovered += 1
            except Exception:
                logger.exception(
                    f"Recovery of workflow {instance.id} for account {instance.account_id} "
                    "failed; it will be retried on next start"
                )
        logger.info(f"Recovered {recovered}/{len(instances)} workflows")
        return recovered

    async def _recover(self, instance: WorkflowInstance) -> bool:
        now = utcnow()
        instance = await self._repository.update_instance(
            instance.id, {"status": WorkflowStatus.RECOVERING}
        )
        unfinished = await self._repository.list_tasks(
            instance.id, (TaskStatus.PENDING, TaskStatus.RUNNING)
        )
        background = [t for t in unfinished if t.kind == TaskKind.PARALLEL]
        await self._scheduling.cancel_for_instance(instance.id, include_running=True)

        definition = await self._definitions.get(instance.workflow_type)
        if definition is None:
            message = f"Workflow definition not found: {instance.workflow_type}"
            await self._repository.update_instance(
                instance.id,
                {
                    "status": WorkflowStatus.FAILED,
                    "failed_at": now,
                    "final_error": message,
                    "last_error": message,
                    "next_action_at": None,
                    "next_task_id": None,
                },
            )
            logger.error(f"Dropping workflow {instance.id}: {message}")
            if self._on_dropped:
                await self._on_dropped(instance.account_id)
            await self._events.publish(
                WorkflowEvent(
                    type=EventType.WORKFLOW_FAILED,
                    account_id=instance.account_id,
                    instance_id=instance.id,
                    workflow_type=instance.workflow_type,
                    error=message,
                )
            )
            return False

        if instance.current_step_index >= definition.total_steps:
            await self._repository.update_instance(
                instance.id,
                {
                    "status": WorkflowStatus.COMPLETED,
                    "current_step_index": definition.total_steps,
                    "completed_at": now,
                    "next_action_at": None,
                    "next_task_id": None,
                },
            )
            logger.info(f"Workflow {instance.id} had already finished; marked completed")
            await self._requeue_background(instance, background)
            if self._on_dropped:
                await self._on_dropped(instance.account_id)
            return False

        next_action_at = ensure_utc(instance.next_action_at)
        fire_at = next_action_at if next_action_at and next_action_at > now else now
        kind = TaskKind.RETRY if instance.retry_count else TaskKind.STEP
        task = await self._scheduling.schedule_at(
            instance,
            definition,
            fire_at,
            kind=kind,
            attempt=instance.retry_count + 1,
            arm=False,
        )
        recovered = await self._repository.update_instance(
            instance.id,
            {
                "status": WorkflowStatus.ACTIVE,
                "recovered_at": now,
                "next_action_at": task.scheduled_for,
                "next_task_id": task.task_id,
            },
        )
        self._scheduling.arm(task)
        await self._requeue_background(recovered, background)
        overdue = fire_at == now
        logger.info(
            f"Recovered workflow {instance.id} for account {instance.account_id} at step "
            f"{instance.current_step_index}" + (" (overdue, firing now)" if overdue else "")
        )
        if self._on_recovered:
            await self._on_recovered(recovered)
        await self._events.publish(
            WorkflowEvent(
                type=EventType.WORKFLOW_RECOVERED,
                account_id=instance.account_id,
                instance_id=instance.id,
                workflow_type=instance.workflow_type,
                data={"overdue": overdue, "fire_at": fire_at.isoformat()},
            )
        )
        return True

    async def _requeue_background(
        self, instance: WorkflowInstance, tasks: List[ScheduledTask]
    ) -> None:
        """Re-create cancelled parallel tasks; they do not follow the step index."""
        for old in tasks:
            task = await self._scheduling.requeue_parallel(instance, old)
            logger.info(
                f"Re-queued parallel step {task.step_id} of workflow {instance.id} "
                f"(was task {old.task_id})"
            )
