"""Execution statistics, threshold alerts and health checks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from contextlib import suppress
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import MonitoringConfig
from .events import EventType, WorkflowEvent
from .persistence.models import TaskStatus
from .persistence.repository import WorkflowRepository
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    severity: AlertSeverity
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


class ActionStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    avg_execution_time_ms: float = 0.0


class ExecutionStats(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    avg_execution_time_ms: float = 0.0
    min_execution_time_ms: Optional[int] = None
    max_execution_time_ms: Optional[int] = None
    retries_scheduled: int = 0
    workflows_started: int = 0
    workflows_completed: int = 0
    workflows_failed: int = 0
    workflows_stopped: int = 0
    workflows_recovered: int = 0
    last_execution_at: Optional[datetime] = None
    by_action: Dict[str, ActionStats] = Field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 1.0
        return self.successful_executions / self.total_executions

    @property
    def failure_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.failed_executions / self.total_executions


class MonitoringService:
    """Observer that aggregates step outcomes and raises alerts.

    Alerts are observational only; nothing here raises into the execution
    path. Repeated breaches are throttled by the health-check period alone.
    """

    _LIFECYCLE_COUNTERS = {
        EventType.WORKFLOW_STARTED: "workflows_started",
        EventType.WORKFLOW_COMPLETED: "workflows_completed",
        EventType.WORKFLOW_FAILED: "workflows_failed",
        EventType.WORKFLOW_STOPPED: "workflows_stopped",
        EventType.WORKFLOW_RECOVERED: "workflows_recovered",
        EventType.STEP_RETRY_SCHEDULED: "retries_scheduled",
    }

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[MonitoringConfig] = None,
        interval_seconds: float = 60.0,
    ) -> None:
        self._repository = repository
        self._config = config or MonitoringConfig()
        self._interval = interval_seconds
        self.stats = ExecutionStats()
        self._alerts: Deque[Alert] = deque(maxlen=self._config.max_alerts)
        self._task: Optional[asyncio.Task] = None
        self.last_health: Optional[Dict[str, Any]] = None

    # observer ----------------------------------------------------------
    async def on_event(self, event: WorkflowEvent) -> None:
        if event.type in (EventType.STEP_EXECUTED, EventType.STEP_FAILED):
            self.record_execution(
                event.action or "unknown",
                event.type == EventType.STEP_EXECUTED,
                event.duration_ms or 0,
            )
            return
        counter = self._LIFECYCLE_COUNTERS.get(event.type)
        if counter:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)
        if event.type == EventType.WORKFLOW_FAILED:
            self.raise_alert(
                "workflow_failed",
                AlertSeverity.ERROR,
                f"Workflow for account {event.account_id} failed: {event.error}",
                {"account_id": event.account_id, "instance_id": event.instance_id},
            )

    def record_execution(self, action: str, success: bool, duration_ms: int) -> None:
        stats = self.stats
        stats.total_executions += 1
        if success:
            stats.successful_executions += 1
        else:
            stats.failed_executions += 1
        stats.avg_execution_time_ms += (
            duration_ms - stats.avg_execution_time_ms
        ) / stats.total_executions
        if stats.min_execution_time_ms is None or duration_ms < stats.min_execution_time_ms:
            stats.min_execution_time_ms = duration_ms
        if stats.max_execution_time_ms is None or duration_ms > stats.max_execution_time_ms:
            stats.max_execution_time_ms = duration_ms
        stats.last_execution_at = utcnow()

        per_action = stats.by_action.setdefault(action, ActionStats())
        per_action.total += 1
        if success:
            per_action.successful += 1
        else:
            per_action.failed += 1
        per_action.avg_execution_time_ms += (
            duration_ms - per_action.avg_execution_time_ms
        ) / per_action.total

    # alerts ------------------------------------------------------------
    def raise_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(type=alert_type, severity=severity, message=message, data=data or {})
        self._alerts.append(alert)
        if severity in (AlertSeverity.ERROR, AlertSeverity.CRITICAL):
            log = logger.error
        else:
            log = logger.warning
        log(f"Alert [{severity.value}] {alert_type}: {message}")
        return alert

    def get_alerts(
        self,
        severity: Optional[str] = None,
        include_acknowledged: bool = True,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        """Alerts newest first, optionally filtered."""
        wanted = AlertSeverity(severity) if severity else None
        alerts = [
            a
            for a in reversed(self._alerts)
            if (wanted is None or a.severity == wanted)
            and (include_acknowledged or not a.acknowledged)
        ]
        return alerts[:limit] if limit is not None else alerts

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                if not alert.acknowledged:
                    alert.acknowledged = True
                    alert.acknowledged_at = utcnow()
                return True
        return False

    # health ------------------------------------------------------------
    async def health_check(self) -> Dict[str, Any]:
        """Evaluate thresholds, raise alerts for breaches and report status."""
        cfg = self._config
        stats = self.stats
        raised: List[Alert] = []
        checks: Dict[str, Any] = {}

        if stats.total_executions >= cfg.min_executions_for_rates:
            checks["failure_rate"] = stats.failure_rate
            checks["success_rate"] = stats.success_rate
            if stats.failure_rate > cfg.max_failure_rate:
                raised.append(
                    self.raise_alert(
                        "high_failure_rate",
                        AlertSeverity.ERROR,
                        f"Failure rate {stats.failure_rate:.1%} exceeds "
                        f"{cfg.max_failure_rate:.1%}",
                        {"failure_rate": stats.failure_rate},
                    )
                )
            if stats.success_rate < cfg.min_success_rate:
                raised.append(
                    self.raise_alert(
                        "low_success_rate",
                        AlertSeverity.WARNING,
                        f"Success rate {stats.success_rate:.1%} below "
                        f"{cfg.min_success_rate:.1%}",
                        {"success_rate": stats.success_rate},
                    )
                )

        if stats.total_executions:
            checks["avg_execution_time_ms"] = stats.avg_execution_time_ms
            if stats.avg_execution_time_ms > cfg.max_avg_execution_ms:
                raised.append(
                    self.raise_alert(
                        "slow_execution",
                        AlertSeverity.WARNING,
                        f"Average step time {stats.avg_execution_time_ms:.0f}ms exceeds "
                        f"{cfg.max_avg_execution_ms:.0f}ms",
                        {"avg_execution_time_ms": stats.avg_execution_time_ms},
                    )
                )

        queue_depth = 0
        try:
            reachable = await self._repository.ping()
            if reachable:
                queue_depth = await self._repository.count_tasks(TaskStatus.PENDING)
        except Exception as e:
            logger.error(f"Repository health query failed: {e}")
            reachable = False
        checks["repository"] = reachable
        if not reachable:
            raised.append(
                self.raise_alert(
                    "repository_unreachable",
                    AlertSeverity.CRITICAL,
                    "Workflow repository is unreachable",
                )
            )
        else:
            checks["queue_depth"] = queue_depth
            if queue_depth > cfg.max_queue_depth:
                raised.append(
                    self.raise_alert(
                        "high_queue_depth",
                        AlertSeverity.WARNING,
                        f"{queue_depth} pending tasks exceed {cfg.max_queue_depth}",
                        {"queue_depth": queue_depth},
                    )
                )

        if not reachable or any(a.severity == AlertSeverity.CRITICAL for a in raised):
            status = "unhealthy"
        elif raised:
            status = "degraded"
        else:
            status = "healthy"
        self.last_health = {
            "status": status,
            "checks": checks,
            "alerts": [a.model_dump() for a in raised],
            "timestamp": utcnow(),
        }
        return self.last_health

    def get_statistics(self) -> Dict[str, Any]:
        data = self.stats.model_dump()
        data["success_rate"] = self.stats.success_rate
        data["failure_rate"] = self.stats.failure_rate
        data["alerts"] = len(self._alerts)
        data["unacknowledged_alerts"] = sum(1 for a in self._alerts if not a.acknowledged)
        return data

    # lifecycle ---------------------------------------------------------
    async def run(self, lifespan: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.health_check()
            except Exception:
                logger.exception("Health check failed")
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
