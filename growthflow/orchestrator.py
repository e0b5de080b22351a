"""Top-level facade that wires the engine together."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .actions import ActionClient, load_action_client
from .config import GrowthflowConfig, load_config
from .constants import DEFAULT_WORKFLOW_TYPE
from .contracts import InstanceStatus, Step, StepAction, StepResult, WorkflowDefinition
from .definitions import DefinitionCache, seed_default_definitions
from .errors import (
    DefinitionNotFoundError,
    FatalStepError,
    InvalidStateError,
    LockContentionError,
    StaleTaskError,
    StepError,
    WorkflowAlreadyActiveError,
    WorkflowNotFoundError,
)
from .events import EventBus, EventType, WorkflowEvent
from .execution import ExecutionService
from .locks import LockService
from .monitoring import Alert, AlertSeverity, MonitoringService
from .persistence import get_repository
from .persistence.models import (
    LIVE_STATUSES,
    ExecutionLogEntry,
    ScheduledTask,
    TaskKind,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .persistence.repository import WorkflowRepository
from .poller import CronPoller
from .recovery import RecoveryService
from .scheduling import SchedulingService
from .utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PARALLEL_RUNNABLE_STATUSES = frozenset({WorkflowStatus.ACTIVE, WorkflowStatus.COMPLETED})


class InstanceTable:
    """In-memory view of live instances keyed by account.

    It is a cache of persisted rows: readers reconcile it against the
    repository instead of trusting it.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = asyncio.Lock()

    async def put(self, instance: WorkflowInstance) -> None:
        async with self._lock:
            if instance.status in LIVE_STATUSES:
                self._instances[instance.account_id] = instance
            else:
                self._instances.pop(instance.account_id, None)

    async def drop(self, account_id: str) -> None:
        async with self._lock:
            self._instances.pop(account_id, None)

    async def replace_all(self, instances: List[WorkflowInstance]) -> None:
        async with self._lock:
            self._instances = {
                i.account_id: i for i in instances if i.status in LIVE_STATUSES
            }

    def get(self, account_id: str) -> Optional[WorkflowInstance]:
        return self._instances.get(account_id)

    def __len__(self) -> int:
        return len(self._instances)


class WorkflowOrchestrator:
    """Start, control and advance workflow instances.

    Call :meth:`initialize` before use and :meth:`shutdown` when done. All
    mutations of an instance happen while holding that account's step lock.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        actions: Optional[ActionClient] = None,
        config: Optional[GrowthflowConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.actions = actions or load_action_client(self.config.actions.client)
        self.events = EventBus()
        self.monitoring = MonitoringService(
            self.repository,
            self.config.monitoring,
            interval_seconds=self.config.scheduler.health_check_interval_seconds,
        )
        self.events.subscribe(self.monitoring)
        self.locks = LockService(self.repository, self.config.locks)
        self.definitions = DefinitionCache(
            self.repository, self.config.scheduler.definition_cache_ttl_seconds
        )
        self.execution = ExecutionService(
            self.repository, self.actions, self.config, self.events
        )
        self.scheduling = SchedulingService(
            self.repository, self.config, runner=self.run_scheduled_task
        )
        self.poller = CronPoller(
            self.repository, self.run_scheduled_task, self.locks, self.config.scheduler
        )
        self.table = InstanceTable()
        self.recovery = RecoveryService(
            self.repository,
            self.scheduling,
            self.definitions,
            self.locks,
            self.events,
            on_recovered=self.table.put,
            on_dropped=self.table.drop,
        )
        self._initialized = False

    # lifecycle ---------------------------------------------------------
    async def initialize(
        self,
        start_background: bool = True,
        recover: bool = True,
        seed_definitions: bool = True,
    ) -> int:
        """Prepare the engine and return the number of recovered workflows."""
        if self._initialized:
            return 0
        if seed_definitions:
            await seed_default_definitions(self.repository)
        await self.actions.connect()
        recovered = await self.recovery.recover_all() if recover else 0
        if start_background:
            self.poller.start()
            self.monitoring.start()
        self._initialized = True
        logger.info(f"Orchestrator initialized as {self.locks.holder}")
        return recovered

    async def shutdown(self) -> None:
        await self.poller.stop()
        await self.monitoring.stop()
        await self.scheduling.shutdown()
        await self.locks.release_all()
        await self.actions.disconnect()
        self._initialized = False
        logger.info("Orchestrator shut down")

    async def __aenter__(self) -> "WorkflowOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # control -----------------------------------------------------------
    async def start(
        self,
        account_id: str,
        account_data: Optional[Dict[str, Any]] = None,
        workflow_type: str = DEFAULT_WORKFLOW_TYPE,
    ) -> WorkflowInstance:
        """Create a workflow instance for the account and schedule step 0.

        Raises ``LockContentionError`` when another start for the account is
        in progress and ``WorkflowAlreadyActiveError`` when the account
        already has a live instance.
        """
        async with self.locks.start_lock(account_id):
            existing = await self.repository.get_instance(account_id)
            if existing is not None and not existing.is_terminal:
                raise WorkflowAlreadyActiveError(
                    f"Account {account_id} already has a {existing.status.value} workflow"
                )
            definition = await self.definitions.get(workflow_type)
            if definition is None:
                raise DefinitionNotFoundError(f"Workflow definition not found: {workflow_type}")

            max_retries = definition.max_retries
            if max_retries is None:
                max_retries = self.config.retry.max_retries
            instance = await self.repository.create_instance(
                WorkflowInstance(
                    account_id=account_id,
                    workflow_type=workflow_type,
                    total_steps=definition.total_steps,
                    account_data=account_data or {},
                    max_retries=max_retries,
                    last_activity_at=utcnow(),
                )
            )
            logger.info(
                f"Started {workflow_type} workflow {instance.id} for account {account_id}"
            )
            await self.events.publish(
                WorkflowEvent(
                    type=EventType.WORKFLOW_STARTED,
                    account_id=account_id,
                    instance_id=instance.id,
                    workflow_type=workflow_type,
                )
            )
            return await self._schedule_or_complete(instance, definition)

    async def stop(self, account_id: str) -> WorkflowInstance:
        """Cancel pending work and mark the account's workflow stopped.

        A step already executing is allowed to finish first.
        """
        async with self.locks.step_lock(
            account_id, wait_seconds=self.config.locks.control_wait_seconds
        ):
            instance = await self._require_live(account_id)
            await self.scheduling.cancel_for_instance(instance.id)
            stopped = await self.repository.update_instance(
                instance.id,
                {
                    "status": WorkflowStatus.STOPPED,
                    "stopped_at": utcnow(),
                    "next_action_at": None,
                    "next_task_id": None,
                },
            )
        await self.table.drop(account_id)
        logger.info(f"Stopped workflow {instance.id} for account {account_id}")
        await self._publish(EventType.WORKFLOW_STOPPED, stopped)
        return stopped

    async def pause(self, account_id: str) -> WorkflowInstance:
        async with self.locks.step_lock(
            account_id, wait_seconds=self.config.locks.control_wait_seconds
        ):
            instance = await self._require_live(account_id)
            if instance.status != WorkflowStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cannot pause workflow in status {instance.status.value}"
                )
            await self.scheduling.cancel_for_instance(instance.id)
            paused = await self.repository.update_instance(
                instance.id,
                {"status": WorkflowStatus.PAUSED, "paused_at": utcnow(), "next_task_id": None},
            )
        await self.table.put(paused)
        logger.info(f"Paused workflow {instance.id} for account {account_id}")
        await self._publish(EventType.WORKFLOW_PAUSED, paused)
        return paused

    async def resume(self, account_id: str) -> WorkflowInstance:
        """Re-arm a paused workflow, keeping whatever delay was left."""
        async with self.locks.step_lock(
            account_id, wait_seconds=self.config.locks.control_wait_seconds
        ):
            instance = await self._require_live(account_id)
            if instance.status != WorkflowStatus.PAUSED:
                raise InvalidStateError(
                    f"Cannot resume workflow in status {instance.status.value}"
                )
            definition = await self._require_definition(instance)
            now = utcnow()
            fire_at = now
            next_action_at = ensure_utc(instance.next_action_at)
            paused_at = ensure_utc(instance.paused_at)
            if next_action_at and paused_at and next_action_at > paused_at:
                fire_at = now + (next_action_at - paused_at)

            resumed = await self.repository.update_instance(
                instance.id,
                {"status": WorkflowStatus.ACTIVE, "paused_at": None, "last_activity_at": now},
            )
            task = await self.scheduling.schedule_at(
                resumed,
                definition,
                fire_at,
                kind=TaskKind.RETRY if resumed.retry_count else TaskKind.STEP,
                attempt=resumed.retry_count + 1,
                arm=False,
            )
            if task is None:
                resumed = await self._complete(resumed)
            else:
                resumed = await self._commit_task(resumed, task)
        logger.info(f"Resumed workflow {instance.id} for account {account_id}")
        await self._publish(EventType.WORKFLOW_RESUMED, resumed)
        return resumed

    # read-only ---------------------------------------------------------
    async def get_status(self, account_id: str) -> InstanceStatus:
        instance = await self._reconcile(account_id)
        if instance is None:
            raise WorkflowNotFoundError(f"No workflow for account {account_id}")
        definition = await self.definitions.get(instance.workflow_type)
        return self._to_status(instance, definition)

    async def list_active(self) -> List[InstanceStatus]:
        instances = await self.repository.list_instances([s.value for s in LIVE_STATUSES])
        await self.table.replace_all(instances)
        statuses = []
        for instance in instances:
            definition = await self.definitions.get(instance.workflow_type)
            statuses.append(self._to_status(instance, definition))
        return statuses

    async def get_statistics(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {s.value: 0 for s in WorkflowStatus}
        for instance in await self.repository.list_instances():
            by_status[instance.status.value] += 1
        return {
            "workflows": by_status,
            "active_in_memory": len(self.table),
            "armed_timers": self.scheduling.armed_count,
            "pending_tasks": await self.repository.count_tasks(TaskStatus.PENDING),
            "executions": self.monitoring.get_statistics(),
            "poller": self.poller.get_statistics(),
        }

    async def health_check(self) -> Dict[str, Any]:
        return await self.monitoring.health_check()

    def get_alerts(
        self,
        severity: Optional[str] = None,
        include_acknowledged: bool = True,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        return self.monitoring.get_alerts(severity, include_acknowledged, limit)

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.monitoring.acknowledge_alert(alert_id)

    async def list_execution_log(self, account_id: str) -> List[ExecutionLogEntry]:
        instance = await self.repository.get_instance(account_id)
        if instance is None:
            raise WorkflowNotFoundError(f"No workflow for account {account_id}")
        return await self.repository.list_execution_log(instance.id)

    async def cleanup(self, older_than_days: float = 7.0) -> Dict[str, int]:
        """Purge old finished tasks and reap expired locks."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await self.repository.delete_finished_tasks(cutoff)
        reaped = await self.locks.cleanup_expired()
        logger.info(f"Cleanup removed {deleted} finished tasks and {reaped} expired locks")
        return {"deleted_tasks": deleted, "expired_locks": reaped}

    # task execution ----------------------------------------------------
    async def run_scheduled_task(self, task: ScheduledTask) -> bool:
        """Execute a due task once, whichever path delivered it.

        Shared by timers and the cron poller. Returns ``True`` when this
        call executed the step; ``False`` when the task was claimed
        elsewhere, stale, or the account's step lock stayed busy.
        """
        try:
            async with self.locks.step_lock(task.account_id):
                return await self._run_locked(task)
        except LockContentionError:
            logger.warning(
                f"Step lock busy for account {task.account_id}; "
                f"task {task.task_id} left for a later attempt"
            )
            return False

    async def _run_locked(self, task: ScheduledTask) -> bool:
        if not await self.repository.claim_scheduled_task(task.task_id):
            logger.debug(f"Task {task.task_id} already claimed or cancelled")
            return False
        self.scheduling.disarm_task(task)
        try:
            return await self._run_claimed(task)
        except Exception as e:
            logger.exception(
                f"Task {task.task_id} for account {task.account_id} failed unexpectedly; "
                "returning it to pending"
            )
            self.monitoring.raise_alert(
                "task_error",
                AlertSeverity.WARNING,
                f"Task {task.task_id} for account {task.account_id} failed: {e}",
                {"task_id": task.task_id, "account_id": task.account_id},
            )
            await self.repository.update_scheduled_task(task.task_id, TaskStatus.PENDING)
            return False

    async def _run_claimed(self, task: ScheduledTask) -> bool:
        instance = await self.repository.get_instance_by_id(task.workflow_instance_id)
        try:
            self._check_runnable(task, instance)
        except StaleTaskError as e:
            logger.debug(f"Discarding stale task {task.task_id}: {e}")
            await self.repository.update_scheduled_task(task.task_id, TaskStatus.COMPLETED)
            return False

        definition = await self.definitions.get(instance.workflow_type)
        if definition is None:
            await self.repository.update_scheduled_task(task.task_id, TaskStatus.FAILED)
            if task.kind == TaskKind.PARALLEL:
                logger.warning(f"Dropping parallel task {task.task_id}: definition missing")
                return False
            await self._fail(instance, f"Workflow definition not found: {instance.workflow_type}")
            return False
        step = self._resolve_step(task, definition)

        if task.kind == TaskKind.PARALLEL:
            return await self._run_parallel(task, instance, step, definition)

        try:
            result = await self.execution.execute_step(
                instance, step, definition, attempt=task.attempt
            )
        except StepError as e:
            await self.repository.update_scheduled_task(task.task_id, TaskStatus.FAILED)
            await self._handle_failure(instance, step, task.step_index, definition, e)
            return True

        await self.repository.update_scheduled_task(task.task_id, TaskStatus.COMPLETED)
        await self._handle_success(instance, task.step_index, definition, result)
        return True

    @staticmethod
    def _check_runnable(task: ScheduledTask, instance: Optional[WorkflowInstance]) -> None:
        if instance is None:
            raise StaleTaskError(f"instance {task.workflow_instance_id} no longer exists")
        if task.kind == TaskKind.PARALLEL:
            # off the timeline; may outlive the main steps
            if instance.status not in PARALLEL_RUNNABLE_STATUSES:
                raise StaleTaskError(f"instance {instance.id} is {instance.status.value}")
            return
        if instance.status != WorkflowStatus.ACTIVE:
            raise StaleTaskError(f"instance {instance.id} is {instance.status.value}")
        if task.step_index != instance.current_step_index:
            raise StaleTaskError(
                f"task is for step {task.step_index}, instance is at "
                f"{instance.current_step_index}"
            )
        if instance.next_task_id and instance.next_task_id != task.task_id:
            raise StaleTaskError(f"instance now waits on task {instance.next_task_id}")

    @staticmethod
    def _resolve_step(task: ScheduledTask, definition: WorkflowDefinition) -> Step:
        step = definition.step_at(task.step_index)
        if step is not None and step.id == task.step_id:
            return step
        # definition changed since scheduling; run the snapshot
        return Step.model_validate(task.payload)

    async def _run_parallel(
        self,
        task: ScheduledTask,
        instance: WorkflowInstance,
        step: Step,
        definition: WorkflowDefinition,
    ) -> bool:
        try:
            await self.execution.execute_step(instance, step, definition, attempt=task.attempt)
        except StepError as e:
            logger.warning(f"Parallel step {step.id} failed for {instance.account_id}: {e}")
            await self.repository.update_scheduled_task(task.task_id, TaskStatus.FAILED)
            return True
        await self.repository.update_scheduled_task(task.task_id, TaskStatus.COMPLETED)
        return True

    async def _handle_success(
        self,
        instance: WorkflowInstance,
        step_index: int,
        definition: WorkflowDefinition,
        result: StepResult,
    ) -> WorkflowInstance:
        next_index = instance.current_step_index if result.redirected else step_index + 1
        updated = await self.repository.update_instance(
            instance.id,
            {
                "current_step_index": next_index,
                "execution_context": instance.execution_context,
                "retry_count": 0,
                "last_activity_at": utcnow(),
            },
        )
        return await self._schedule_or_complete(
            updated, definition, skip_parallel=not result.redirected
        )

    async def _handle_failure(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_index: int,
        definition: WorkflowDefinition,
        error: StepError,
    ) -> WorkflowInstance:
        now = utcnow()
        if not step.critical:
            logger.warning(
                f"Non-critical step {step.id} failed for account {instance.account_id}; "
                "continuing"
            )
            updated = await self.repository.update_instance(
                instance.id,
                {
                    "current_step_index": step_index + 1,
                    "retry_count": 0,
                    "last_error": error.message,
                    "last_activity_at": now,
                },
            )
            return await self._schedule_or_complete(updated, definition)

        if not error.retryable:
            return await self._fail(instance, error.message)

        if instance.retry_count >= instance.max_retries:
            fatal = FatalStepError(
                f"Step {step.id} failed after {instance.retry_count} retries: {error.message}"
            )
            return await self._fail(instance, fatal.message)

        retry_count = instance.retry_count + 1
        updated = await self.repository.update_instance(
            instance.id,
            {"retry_count": retry_count, "last_error": error.message, "last_activity_at": now},
        )
        task = await self.scheduling.schedule_retry(
            updated,
            step,
            attempt=retry_count - 1,
            base_backoff_ms=definition.retry_backoff_ms,
            arm=False,
        )
        updated = await self._commit_task(updated, task)
        await self._publish(
            EventType.STEP_RETRY_SCHEDULED,
            updated,
            step_id=step.id,
            error=error.message,
            data={"retry_count": retry_count, "max_retries": updated.max_retries},
        )
        return updated

    # transitions -------------------------------------------------------
    async def _schedule_or_complete(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        skip_parallel: bool = True,
    ) -> WorkflowInstance:
        """Schedule the current step, spinning off parallel steps on the way."""
        index = instance.current_step_index
        if skip_parallel:
            while True:
                step = definition.step_at(index)
                if step is None or not step.parallel or step.kind == StepAction.GOTO:
                    break
                await self.scheduling.schedule_parallel(instance, step, index)
                index += 1
            if index != instance.current_step_index:
                instance = await self.repository.update_instance(
                    instance.id, {"current_step_index": index}
                )

        task = await self.scheduling.schedule_next(instance, definition, arm=False)
        if task is None:
            return await self._complete(instance)
        return await self._commit_task(instance, task)

    async def _commit_task(
        self, instance: WorkflowInstance, task: ScheduledTask
    ) -> WorkflowInstance:
        updated = await self.repository.update_instance(
            instance.id,
            {"next_action_at": task.scheduled_for, "next_task_id": task.task_id},
        )
        self.scheduling.arm(task)
        await self.table.put(updated)
        return updated

    async def _complete(self, instance: WorkflowInstance) -> WorkflowInstance:
        completed = await self.repository.update_instance(
            instance.id,
            {
                "status": WorkflowStatus.COMPLETED,
                "current_step_index": instance.total_steps,
                "completed_at": utcnow(),
                "next_action_at": None,
                "next_task_id": None,
            },
        )
        await self.table.drop(instance.account_id)
        logger.info(f"Workflow {instance.id} for account {instance.account_id} completed")
        await self._publish(EventType.WORKFLOW_COMPLETED, completed)
        return completed

    async def _fail(self, instance: WorkflowInstance, message: str) -> WorkflowInstance:
        await self.scheduling.cancel_for_instance(instance.id)
        failed = await self.repository.update_instance(
            instance.id,
            {
                "status": WorkflowStatus.FAILED,
                "failed_at": utcnow(),
                "final_error": message,
                "last_error": message,
                "next_action_at": None,
                "next_task_id": None,
            },
        )
        await self.table.drop(instance.account_id)
        logger.error(f"Workflow {instance.id} for account {instance.account_id} failed: {message}")
        await self._publish(EventType.WORKFLOW_FAILED, failed, error=message)
        return failed

    # helpers -----------------------------------------------------------
    async def _publish(
        self, event_type: EventType, instance: WorkflowInstance, **fields: Any
    ) -> None:
        await self.events.publish(
            WorkflowEvent(
                type=event_type,
                account_id=instance.account_id,
                instance_id=instance.id,
                workflow_type=instance.workflow_type,
                **fields,
            )
        )

    async def _reconcile(self, account_id: str) -> Optional[WorkflowInstance]:
        instance = await self.repository.get_instance(account_id)
        if instance is None:
            await self.table.drop(account_id)
        else:
            await self.table.put(instance)
        return instance

    async def _require_live(self, account_id: str) -> WorkflowInstance:
        instance = await self._reconcile(account_id)
        if instance is None:
            raise WorkflowNotFoundError(f"No workflow for account {account_id}")
        if instance.is_terminal:
            raise InvalidStateError(
                f"Workflow for account {account_id} is already {instance.status.value}"
            )
        return instance

    async def _require_definition(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = await self.definitions.get(instance.workflow_type)
        if definition is None:
            raise DefinitionNotFoundError(
                f"Workflow definition not found: {instance.workflow_type}"
            )
        return definition

    def _to_status(
        self, instance: WorkflowInstance, definition: Optional[WorkflowDefinition]
    ) -> InstanceStatus:
        step = definition.step_at(instance.current_step_index) if definition else None
        total = instance.total_steps
        progress = instance.current_step_index / total if total else 1.0
        return InstanceStatus(
            instance_id=instance.id,
            account_id=instance.account_id,
            workflow_type=instance.workflow_type,
            status=instance.status.value,
            current_step_index=instance.current_step_index,
            total_steps=total,
            current_step_id=step.id if step else None,
            progress=round(progress, 4),
            retry_count=instance.retry_count,
            max_retries=instance.max_retries,
            next_action_at=instance.next_action_at,
            started_at=instance.started_at,
            last_activity_at=instance.last_activity_at,
            finished_at=instance.finished_at,
            last_error=instance.last_error,
            final_error=instance.final_error,
            timer_armed=self.scheduling.is_armed(instance.id),
            execution_context=instance.execution_context,
        )
