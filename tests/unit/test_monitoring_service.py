import pytest

from growthflow.config import MonitoringConfig
from growthflow.events import EventBus, EventType, WorkflowEvent
from growthflow.monitoring import AlertSeverity, MonitoringService
from growthflow.persistence.models import ScheduledTask
from growthflow.utils.clock import utcnow


class UnreachableRepository:
    async def ping(self) -> bool:
        raise ConnectionError("connection refused")

    async def count_tasks(self, status=None) -> int:  # pragma: no cover - never reached
        raise AssertionError("queue depth must not be read when unreachable")


def _step_event(success: bool, duration_ms: int, action: str = "generate_content_a"):
    return WorkflowEvent(
        type=EventType.STEP_EXECUTED if success else EventType.STEP_FAILED,
        account_id="acct",
        instance_id="inst",
        action=action,
        success=success,
        duration_ms=duration_ms,
    )


@pytest.mark.asyncio
async def test_records_running_mean_and_bounds(repo):
    monitor = MonitoringService(repo)
    for duration in (10, 20, 60):
        await monitor.on_event(_step_event(True, duration))
    await monitor.on_event(_step_event(False, 30, action="run_batch_action"))

    stats = monitor.stats
    assert stats.total_executions == 4
    assert stats.successful_executions == 3
    assert stats.failed_executions == 1
    assert stats.avg_execution_time_ms == pytest.approx(30.0)
    assert stats.min_execution_time_ms == 10
    assert stats.max_execution_time_ms == 60
    assert stats.by_action["generate_content_a"].avg_execution_time_ms == pytest.approx(30.0)
    assert stats.by_action["run_batch_action"].failed == 1
    assert stats.failure_rate == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_lifecycle_events_count_and_failures_alert(repo):
    monitor = MonitoringService(repo)
    for event_type in (EventType.WORKFLOW_STARTED, EventType.WORKFLOW_FAILED):
        await monitor.on_event(
            WorkflowEvent(type=event_type, account_id="acct", instance_id="inst", error="boom")
        )

    assert monitor.stats.workflows_started == 1
    assert monitor.stats.workflows_failed == 1
    alerts = monitor.get_alerts()
    assert [a.type for a in alerts] == ["workflow_failed"]
    assert alerts[0].severity == AlertSeverity.ERROR
    assert "boom" in alerts[0].message


@pytest.mark.asyncio
async def test_healthy_when_nothing_breached(repo):
    monitor = MonitoringService(repo)
    report = await monitor.health_check()

    assert report["status"] == "healthy"
    assert report["checks"]["repository"] is True
    assert report["checks"]["queue_depth"] == 0
    assert report["alerts"] == []


@pytest.mark.asyncio
async def test_rates_checked_only_with_enough_samples(repo):
    monitor = MonitoringService(repo, MonitoringConfig(min_executions_for_rates=4))
    for _ in range(3):
        monitor.record_execution("run_batch_action", False, 5)

    report = await monitor.health_check()
    assert "failure_rate" not in report["checks"]
    assert report["status"] == "healthy"

    monitor.record_execution("run_batch_action", False, 5)
    report = await monitor.health_check()
    types = {a["type"] for a in report["alerts"]}
    assert types == {"high_failure_rate", "low_success_rate"}
    assert report["status"] == "degraded"


@pytest.mark.asyncio
async def test_slow_execution_and_queue_depth(repo):
    monitor = MonitoringService(repo, MonitoringConfig(max_avg_execution_ms=100, max_queue_depth=1))
    monitor.record_execution("generate_content_b", True, 500)
    for index in range(2):
        await repo.create_scheduled_task(
            ScheduledTask(
                workflow_instance_id="inst",
                account_id="acct",
                step_id=f"s{index}",
                step_index=index,
                action="wait",
                scheduled_for=utcnow(),
            )
        )

    report = await monitor.health_check()

    assert {a["type"] for a in report["alerts"]} == {"slow_execution", "high_queue_depth"}
    assert report["checks"]["queue_depth"] == 2
    assert report["status"] == "degraded"


class QueueQueryFailsRepository:
    async def ping(self) -> bool:
        return True

    async def count_tasks(self, status=None) -> int:
        raise TimeoutError("statement timeout")


@pytest.mark.asyncio
async def test_failing_queue_query_reports_unhealthy_without_raising():
    monitor = MonitoringService(QueueQueryFailsRepository())

    report = await monitor.health_check()

    assert report["status"] == "unhealthy"
    assert report["checks"]["repository"] is False
    assert "queue_depth" not in report["checks"]
    assert [a["type"] for a in report["alerts"]] == ["repository_unreachable"]


@pytest.mark.asyncio
async def test_unreachable_repository_is_unhealthy():
    monitor = MonitoringService(UnreachableRepository())
    report = await monitor.health_check()

    assert report["status"] == "unhealthy"
    assert report["checks"]["repository"] is False
    assert report["alerts"][0]["severity"] == AlertSeverity.CRITICAL


def test_alert_filters_and_acknowledgement(repo):
    monitor = MonitoringService(repo)
    first = monitor.raise_alert("a", AlertSeverity.WARNING, "first")
    second = monitor.raise_alert("b", AlertSeverity.ERROR, "second")

    assert [a.id for a in monitor.get_alerts()] == [second.id, first.id]
    assert [a.id for a in monitor.get_alerts(severity="warning")] == [first.id]
    assert monitor.get_alerts(limit=1)[0].id == second.id

    assert monitor.acknowledge_alert(first.id) is True
    assert first.acknowledged_at is not None
    assert [a.id for a in monitor.get_alerts(include_acknowledged=False)] == [second.id]
    assert monitor.acknowledge_alert("missing") is False
    assert monitor.get_statistics()["unacknowledged_alerts"] == 1


def test_alert_history_is_bounded(repo):
    monitor = MonitoringService(repo, MonitoringConfig(max_alerts=3))
    for index in range(5):
        monitor.raise_alert(f"t{index}", AlertSeverity.INFO, "x")

    assert [a.type for a in monitor.get_alerts()] == ["t4", "t3", "t2"]


class RecordingObserver:
    def __init__(self):
        self.events = []

    async def on_event(self, event):
        self.events.append(event.type)


class BrokenObserver:
    async def on_event(self, event):
        raise RuntimeError("observer bug")


@pytest.mark.asyncio
async def test_event_bus_isolates_observer_errors():
    bus = EventBus()
    recorder = RecordingObserver()
    bus.subscribe(BrokenObserver())
    bus.subscribe(recorder)
    bus.subscribe(recorder)

    await bus.publish(
        WorkflowEvent(type=EventType.WORKFLOW_STARTED, account_id="a", instance_id="i")
    )

    assert recorder.events == [EventType.WORKFLOW_STARTED]
    bus.unsubscribe(recorder)
    await bus.publish(
        WorkflowEvent(type=EventType.WORKFLOW_STOPPED, account_id="a", instance_id="i")
    )
    assert recorder.events == [EventType.WORKFLOW_STARTED]
