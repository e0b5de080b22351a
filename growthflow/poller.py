"""Periodic scan for due scheduled tasks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Dict, Optional

from .config import SchedulerConfig
from .locks import LockService
from .persistence.repository import WorkflowRepository
from .scheduling import TaskRunner
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class CronPoller:
    """Durable fallback for lost timers.

    Each tick reaps expired locks, then hands every pending task whose
    ``scheduled_for`` has passed to the shared task runner. The runner's
    atomic claim decides whether the timer path or this path executes a
    task, so racing with a live timer is harmless.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        runner: TaskRunner,
        locks: LockService,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self._locks = locks
        self._config = config or SchedulerConfig()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.dispatched = 0
        self.executed = 0
        self.errors = 0
        self.last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Run one tick and return how many tasks were executed by it."""
        self.ticks += 1
        self.last_run_at = utcnow()
        await self._locks.cleanup_expired()
        due = await self._repository.get_due_tasks(
            self.last_run_at, limit=self._config.poll_batch_size
        )
        if not due:
            return 0
        logger.info(f"Poller found {len(due)} due tasks")
        self.dispatched += len(due)
        outcomes = await asyncio.gather(
            *(self._runner(task) for task in due), return_exceptions=True
        )
        executed = 0
        for task, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                self.errors += 1
                logger.error(f"Poller run of task {task.task_id} failed: {outcome}")
            elif outcome:
                executed += 1
        self.executed += executed
        return executed

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll on a fixed period until cancelled or ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            try:
                await self.poll_once()
            except Exception:
                self.errors += 1
                logger.exception("Poller tick failed")
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(self._config.poll_interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())
        logger.info(f"Cron poller started (every {self._config.poll_interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Cron poller stopped")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "ticks": self.ticks,
            "dispatched": self.dispatched,
            "executed": self.executed,
            "errors": self.errors,
            "last_run_at": self.last_run_at,
            "interval_seconds": self._config.poll_interval_seconds,
        }
