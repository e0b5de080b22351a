"""Fire-time computation, durable task creation and in-memory timers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

from .config import GrowthflowConfig
from .contracts import Step, WorkflowDefinition
from .persistence.models import ScheduledTask, TaskKind, WorkflowInstance
from .persistence.repository import WorkflowRepository
from .utils.clock import ensure_utc, utcnow
from .utils.retry import compute_backoff, random_interval

logger = logging.getLogger(__name__)

TaskRunner = Callable[[ScheduledTask], Awaitable[bool]]


class SchedulingService:
    """Decide when steps fire and keep the timers that fire them.

    Every scheduled step is first written as a pending ``ScheduledTask`` and
    then, as a fast path, armed as an event-loop timer. If the process dies
    the timer is lost but the task is not; the cron poller picks it up.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[GrowthflowConfig] = None,
        runner: Optional[TaskRunner] = None,
    ) -> None:
        self._repository = repository
        self._config = config or GrowthflowConfig()
        self._runner = runner
        self._timers: Dict[str, Dict[str, asyncio.TimerHandle]] = {}
        self._inflight: Set[asyncio.Task] = set()

    def set_runner(self, runner: TaskRunner) -> None:
        self._runner = runner

    # ------------------------------------------------------------------
    def compute_fire_delay(self, step: Step) -> int:
        """Delay in ms before ``step`` fires.

        Continuous toggles with both interval bounds get a fresh uniform
        random delay on every call; every other step uses ``delay_ms``.
        """
        if step.has_random_interval:
            return int(random_interval(step.min_interval_ms, step.max_interval_ms))
        return max(step.delay_ms, 0)

    def retry_delay(self, attempt: int, base_backoff_ms: Optional[int] = None) -> int:
        retry = self._config.retry
        base = retry.base_backoff_ms if base_backoff_ms is None else base_backoff_ms
        return compute_backoff(attempt, base, retry.max_backoff_ms)

    async def schedule_next(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, arm: bool = True
    ) -> Optional[ScheduledTask]:
        """Enqueue the step at ``current_step_index``.

        Returns ``None`` when the instance has run past its last step.
        """
        step = definition.step_at(instance.current_step_index)
        if step is None:
            return None
        fire_at = utcnow() + timedelta(milliseconds=self.compute_fire_delay(step))
        return await self._enqueue(
            instance, step, instance.current_step_index, fire_at, TaskKind.STEP, 1, arm
        )

    async def schedule_at(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        fire_at: datetime,
        kind: TaskKind = TaskKind.STEP,
        attempt: int = 1,
        arm: bool = True,
    ) -> Optional[ScheduledTask]:
        """Enqueue the current step for an absolute time (recovery, resume)."""
        step = definition.step_at(instance.current_step_index)
        if step is None:
            return None
        return await self._enqueue(
            instance, step, instance.current_step_index, ensure_utc(fire_at), kind, attempt, arm
        )

    async def schedule_retry(
        self,
        instance: WorkflowInstance,
        step: Step,
        attempt: int,
        base_backoff_ms: Optional[int] = None,
        arm: bool = True,
    ) -> ScheduledTask:
        """Enqueue a retry of ``step`` after exponential backoff.

        ``attempt`` is the zero-based retry number, so the first retry waits
        the base backoff.
        """
        delay = self.retry_delay(attempt, base_backoff_ms)
        fire_at = utcnow() + timedelta(milliseconds=delay)
        logger.warning(
            f"Retry {attempt + 1} of step {step.id} for account {instance.account_id} "
            f"in {delay}ms"
        )
        return await self._enqueue(
            instance,
            step,
            instance.current_step_index,
            fire_at,
            TaskKind.RETRY,
            attempt + 2,
            arm,
        )

    async def schedule_parallel(
        self, instance: WorkflowInstance, step: Step, index: int
    ) -> ScheduledTask:
        """Enqueue a step that runs off the main timeline."""
        fire_at = utcnow() + timedelta(milliseconds=self.compute_fire_delay(step))
        return await self._enqueue(instance, step, index, fire_at, TaskKind.PARALLEL, 1, True)

    async def requeue_parallel(
        self, instance: WorkflowInstance, task: ScheduledTask, arm: bool = True
    ) -> ScheduledTask:
        """Re-create an unfinished parallel task, keeping its fire time if still ahead."""
        fire_at = max(ensure_utc(task.scheduled_for), utcnow())
        step = Step.model_validate(task.payload)
        return await self._enqueue(
            instance, step, task.step_index, fire_at, TaskKind.PARALLEL, task.attempt, arm
        )

    async def _enqueue(
        self,
        instance: WorkflowInstance,
        step: Step,
        index: int,
        fire_at: datetime,
        kind: TaskKind,
        attempt: int,
        arm: bool,
    ) -> ScheduledTask:
        task = ScheduledTask(
            workflow_instance_id=instance.id,
            account_id=instance.account_id,
            step_id=step.id,
            step_index=index,
            action=step.action,
            kind=kind,
            scheduled_for=fire_at,
            payload=step.model_dump(),
            attempt=attempt,
        )
        await self._repository.create_scheduled_task(task)
        logger.info(
            f"Scheduled {kind.value} task {task.task_id} for step {step.id} "
            f"of account {instance.account_id} at {fire_at.isoformat()}"
        )
        if arm:
            self.arm(task)
        return task

    # ------------------------------------------------------------------
    def arm(self, task: ScheduledTask) -> None:
        """Register an in-memory timer that hands ``task`` to the runner."""
        loop = asyncio.get_running_loop()
        delay = max((ensure_utc(task.scheduled_for) - utcnow()).total_seconds(), 0.0)
        handle = loop.call_later(delay, self._fire, task)
        self._timers.setdefault(task.workflow_instance_id, {})[task.task_id] = handle

    def disarm_task(self, task: ScheduledTask) -> None:
        handles = self._timers.get(task.workflow_instance_id)
        if not handles:
            return
        handle = handles.pop(task.task_id, None)
        if handle is not None:
            handle.cancel()
        if not handles:
            self._timers.pop(task.workflow_instance_id, None)

    def disarm(self, instance_id: str) -> int:
        handles = self._timers.pop(instance_id, {})
        for handle in handles.values():
            handle.cancel()
        return len(handles)

    def is_armed(self, instance_id: str) -> bool:
        return bool(self._timers.get(instance_id))

    @property
    def armed_count(self) -> int:
        return sum(len(h) for h in self._timers.values())

    async def cancel_for_instance(self, instance_id: str, include_running: bool = False) -> int:
        """Disarm timers and cancel the instance's pending tasks."""
        self.disarm(instance_id)
        cancelled = await self._repository.cancel_pending_tasks(
            instance_id, include_running=include_running
        )
        if cancelled:
            logger.info(f"Cancelled {cancelled} scheduled tasks of instance {instance_id}")
        return cancelled

    def _fire(self, task: ScheduledTask) -> None:
        handles = self._timers.get(task.workflow_instance_id)
        if handles is not None:
            handles.pop(task.task_id, None)
            if not handles:
                self._timers.pop(task.workflow_instance_id, None)
        if self._runner is None:
            logger.debug(f"No runner for task {task.task_id}; leaving it to the poller")
            return
        running = asyncio.create_task(self._run(task))
        self._inflight.add(running)
        running.add_done_callback(self._inflight.discard)

    async def _run(self, task: ScheduledTask) -> None:
        try:
            await self._runner(task)
        except Exception:
            logger.exception(f"Timer run of task {task.task_id} failed")

    async def shutdown(self) -> None:
        """Disarm every timer and wait for in-flight timer runs to finish."""
        for instance_id in list(self._timers):
            self.disarm(instance_id)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
