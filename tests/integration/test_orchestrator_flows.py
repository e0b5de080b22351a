import asyncio

import pytest

from growthflow.contracts import Step
from growthflow.errors import (
    DefinitionNotFoundError,
    InvalidStateError,
    LockContentionError,
    WorkflowAlreadyActiveError,
    WorkflowNotFoundError,
)
from growthflow.orchestrator import WorkflowOrchestrator
from growthflow.persistence import InMemoryWorkflowRepository
from growthflow.persistence.models import TaskStatus, WorkflowStatus


async def _status(repo, account_id):
    instance = await repo.get_instance(account_id)
    return instance.status if instance else None


def _is(repo, account_id, status):
    async def check():
        return await _status(repo, account_id) == status

    return check


@pytest.mark.asyncio
async def test_workflow_runs_every_step_to_completion(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "fast",
            Step(id="settle", action="wait"),
            Step(id="content_a", action="generate_content_a", critical=True),
            Step(id="batch", action="run_batch_action", batch_size=3),
            Step(id="continuous", action="toggle_continuous_action_on", min_count=1, max_count=2),
            Step(id="content_b", action="generate_content_b"),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        instance = await orchestrator.start("acct", {"name": "Acme"}, "fast")
        assert instance.status == WorkflowStatus.ACTIVE
        assert instance.next_task_id is not None

        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED))

        final = await repo.get_instance("acct")
        assert final.current_step_index == final.total_steps == 5
        assert final.completed_at is not None
        assert [c.method for c in actions.calls] == [
            "apply_content_a",
            "run_batch_action",
            "toggle_continuous_action",
            "apply_content_b",
        ]
        assert actions.calls[0].params["account_data"] == {"name": "Acme"}
        assert actions.calls[1].params["count"] == 3
        assert actions.calls[2].on is True

        log = await orchestrator.list_execution_log("acct")
        assert [e.step_id for e in log] == [
            "settle",
            "content_a",
            "batch",
            "continuous",
            "content_b",
        ]
        assert all(e.success for e in log)
        assert len(orchestrator.table) == 0

        stats = await orchestrator.get_statistics()
        assert stats["workflows"]["completed"] == 1
        assert stats["executions"]["total_executions"] == 5
        assert stats["executions"]["workflows_completed"] == 1
        assert stats["armed_timers"] == 0
        assert (await orchestrator.health_check())["status"] == "healthy"
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_start_rejects_second_live_instance(orchestrator, repo, definition_factory):
    await repo.save_definition(
        definition_factory("slow", Step(id="w", action="wait", delay_ms=10_000))
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="slow")
        with pytest.raises(WorkflowAlreadyActiveError):
            await orchestrator.start("acct", workflow_type="slow")

        await orchestrator.stop("acct")
        restarted = await orchestrator.start("acct", workflow_type="slow")
        assert restarted.status == WorkflowStatus.ACTIVE
        assert len(await repo.list_instances()) == 2
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_start_with_unknown_type(orchestrator, repo):
    await orchestrator.initialize(start_background=False)
    try:
        with pytest.raises(DefinitionNotFoundError):
            await orchestrator.start("acct", workflow_type="nope")
        assert await repo.get_instance("acct") is None
        with pytest.raises(WorkflowNotFoundError):
            await orchestrator.get_status("acct")
    finally:
        await orchestrator.shutdown()


class SlowDefinitionRepository(InMemoryWorkflowRepository):
    async def get_definition(self, workflow_type):
        await asyncio.sleep(0.05)
        return await super().get_definition(workflow_type)


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_instance(actions, config, definition_factory):
    repo = SlowDefinitionRepository()
    await repo.save_definition(
        definition_factory("slow", Step(id="w", action="wait", delay_ms=10_000))
    )
    orchestrator = WorkflowOrchestrator(repository=repo, actions=actions, config=config)
    await orchestrator.initialize(start_background=False, seed_definitions=False)
    try:
        outcomes = await asyncio.gather(
            orchestrator.start("acct", workflow_type="slow"),
            orchestrator.start("acct", workflow_type="slow"),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(errors) == 1
        assert isinstance(errors[0], LockContentionError)
        assert "Duplicate execution in progress" in str(errors[0])
        assert len(await repo.list_instances()) == 1
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_task_delivered_twice_executes_once(orchestrator, repo, actions, definition_factory):
    await repo.save_definition(
        definition_factory(
            "race",
            Step(id="content_a", action="generate_content_a", delay_ms=10_000),
            Step(id="later", action="wait", delay_ms=10_000),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        instance = await orchestrator.start("acct", workflow_type="race")
        task = await repo.get_scheduled_task(instance.next_task_id)

        outcomes = await asyncio.gather(
            orchestrator.run_scheduled_task(task), orchestrator.run_scheduled_task(task)
        )

        assert sorted(outcomes) == [False, True]
        assert len(actions.calls_for("apply_content_a")) == 1
        assert len(await repo.list_execution_log(instance.id)) == 1
        assert (await repo.get_scheduled_task(task.task_id)).status == TaskStatus.COMPLETED
        assert (await repo.get_instance("acct")).current_step_index == 1
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_poller_runs_tasks_when_timers_are_lost(
    orchestrator, repo, actions, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "polled",
            Step(id="content_a", action="generate_content_a"),
            Step(id="content_b", action="generate_content_b"),
        )
    )
    await orchestrator.initialize(start_background=False)
    orchestrator.scheduling.set_runner(None)
    try:
        await orchestrator.start("acct", workflow_type="polled")
        await asyncio.sleep(0.01)
        assert actions.calls == []

        for _ in range(5):
            await orchestrator.poller.poll_once()
            if await _status(repo, "acct") == WorkflowStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)

        assert await _status(repo, "acct") == WorkflowStatus.COMPLETED
        assert [c.method for c in actions.calls] == ["apply_content_a", "apply_content_b"]
        assert orchestrator.poller.executed == 2
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_infinite_goto_keeps_looping_until_stopped(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "loop",
            Step(id="pause", action="wait", delay_ms=100),
            Step(id="content_a", action="generate_content_a", critical=True),
            Step(id="again", action="goto", next_step_id="pause", infinite_allowed=True),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="loop")

        await eventually(lambda: len(actions.calls_for("apply_content_a")) >= 2, timeout=3.0)

        instance = await repo.get_instance("acct")
        assert instance.status == WorkflowStatus.ACTIVE
        assert instance.execution_context["again_to_pause"] >= 1

        stopped = await orchestrator.stop("acct")
        assert stopped.status == WorkflowStatus.STOPPED
        calls = len(actions.calls_for("apply_content_a"))
        await asyncio.sleep(0.25)
        assert len(actions.calls_for("apply_content_a")) == calls
        assert not orchestrator.scheduling.is_armed(instance.id)
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_bounded_goto_fails_critical_workflow(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "bounded",
            Step(id="content_a", action="generate_content_a"),
            Step(
                id="again",
                action="goto",
                next_step_id="content_a",
                infinite_allowed=False,
                max_iterations=2,
                critical=True,
            ),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="bounded")
        await eventually(_is(repo, "acct", WorkflowStatus.FAILED))

        instance = await repo.get_instance("acct")
        assert "Goto loop limit exceeded" in instance.final_error
        assert len(actions.calls_for("apply_content_a")) == 3
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_critical_failure_retries_then_fails(
    orchestrator, repo, actions, eventually, definition_factory
):
    actions.fail("apply_content_a", "upstream unavailable")
    await repo.save_definition(
        definition_factory(
            "fragile",
            Step(id="content_a", action="generate_content_a", critical=True),
            Step(id="content_b", action="generate_content_b"),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="fragile")
        await eventually(_is(repo, "acct", WorkflowStatus.FAILED))

        instance = await repo.get_instance("acct")
        log = await repo.list_execution_log(instance.id)
        assert len(log) == 4
        assert [e.attempt for e in log] == [1, 2, 3, 4]
        assert not any(e.success for e in log)
        assert instance.final_error == (
            "Step content_a failed after 3 retries: upstream unavailable"
        )
        assert actions.calls_for("apply_content_b") == []
        assert orchestrator.monitoring.stats.retries_scheduled == 3
        assert orchestrator.get_alerts()[0].type == "workflow_failed"
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_retry_succeeds_and_resets_count(
    orchestrator, repo, actions, config, eventually, definition_factory
):
    config.retry.max_backoff_ms = 1000
    actions.fail("apply_content_a")
    await repo.save_definition(
        definition_factory(
            "flaky",
            Step(id="content_a", action="generate_content_a", critical=True),
            retry_backoff_ms=200,
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="flaky")

        async def retry_pending():
            instance = await repo.get_instance("acct")
            return instance.retry_count == 1

        await eventually(retry_pending)
        actions.reset()
        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED))

        instance = await repo.get_instance("acct")
        log = await repo.list_execution_log(instance.id)
        assert [(e.attempt, e.success) for e in log] == [(1, False), (2, True)]
        assert instance.retry_count == 0
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_non_critical_failure_advances(
    orchestrator, repo, actions, eventually, definition_factory
):
    actions.fail("apply_content_a", "rate limited")
    await repo.save_definition(
        definition_factory(
            "lenient",
            Step(id="content_a", action="generate_content_a"),
            Step(id="batch", action="run_batch_action", batch_size=2),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="lenient")
        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED))

        instance = await repo.get_instance("acct")
        assert instance.last_error == "rate limited"
        assert instance.final_error is None
        assert len(actions.calls_for("run_batch_action")) == 1
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_stop_during_wait_cancels_pending_step(
    orchestrator, repo, actions, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "stoppable",
            Step(id="content_a", action="generate_content_a", delay_ms=200),
        )
    )
    await orchestrator.initialize()
    try:
        instance = await orchestrator.start("acct", workflow_type="stoppable")
        stopped = await orchestrator.stop("acct")

        assert stopped.status == WorkflowStatus.STOPPED
        assert stopped.next_task_id is None
        await asyncio.sleep(0.35)
        assert actions.calls == []
        task = await repo.get_scheduled_task(instance.next_task_id)
        assert task.status == TaskStatus.CANCELLED

        with pytest.raises(InvalidStateError):
            await orchestrator.stop("acct")
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_pause_and_resume_keep_remaining_delay(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "pausable",
            Step(id="content_a", action="generate_content_a", delay_ms=300),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("acct", workflow_type="pausable")
        with pytest.raises(InvalidStateError):
            await orchestrator.resume("acct")

        paused = await orchestrator.pause("acct")
        assert paused.status == WorkflowStatus.PAUSED
        assert paused.next_action_at is not None
        assert not orchestrator.scheduling.is_armed(paused.id)
        with pytest.raises(InvalidStateError):
            await orchestrator.pause("acct")

        await asyncio.sleep(0.4)
        assert actions.calls == []

        resumed = await orchestrator.resume("acct")
        assert resumed.status == WorkflowStatus.ACTIVE
        assert resumed.paused_at is None
        assert orchestrator.scheduling.is_armed(resumed.id)
        status = await orchestrator.get_status("acct")
        assert status.timer_armed is True

        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED))
        assert len(actions.calls_for("apply_content_a")) == 1
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_parallel_step_runs_off_the_main_timeline(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "fanout",
            Step(id="content_a", action="generate_content_a", parallel=True),
            Step(id="settle", action="wait", delay_ms=150),
            Step(id="batch", action="run_batch_action", batch_size=1),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        instance = await orchestrator.start("acct", workflow_type="fanout")
        assert instance.current_step_index == 1

        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED))
        assert len(actions.calls_for("apply_content_a")) == 1
        assert len(actions.calls_for("run_batch_action")) == 1
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_status_and_listing(orchestrator, repo, definition_factory):
    await repo.save_definition(
        definition_factory(
            "listed",
            Step(id="w", action="wait", delay_ms=10_000),
            Step(id="content_a", action="generate_content_a"),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        await orchestrator.start("a1", workflow_type="listed")
        await orchestrator.start("a2", workflow_type="listed")
        await orchestrator.pause("a2")

        status = await orchestrator.get_status("a1")
        assert status.status == "active"
        assert status.current_step_id == "w"
        assert status.progress == 0.0
        assert status.timer_armed is True

        listed = {s.account_id: s.status for s in await orchestrator.list_active()}
        assert listed == {"a1": "active", "a2": "paused"}

        stats = await orchestrator.get_statistics()
        assert stats["workflows"]["active"] == 1
        assert stats["workflows"]["paused"] == 1
        assert stats["pending_tasks"] == 1
        assert stats["active_in_memory"] == 2
    finally:
        await orchestrator.shutdown()


class FlakyLogRepository(InMemoryWorkflowRepository):
    """Fails the first execution-log write, as a locked database would."""

    def __init__(self):
        super().__init__()
        self.log_failures = 1

    async def append_execution_log(self, entry):
        if self.log_failures:
            self.log_failures -= 1
            raise RuntimeError("database is locked")
        return await super().append_execution_log(entry)


@pytest.mark.asyncio
async def test_store_error_returns_task_to_poller(actions, config, eventually, definition_factory):
    repo = FlakyLogRepository()
    await repo.save_definition(
        definition_factory(
            "flaky-store",
            Step(id="a", action="generate_content_a", critical=True),
            Step(id="b", action="wait"),
        )
    )
    orchestrator = WorkflowOrchestrator(repository=repo, actions=actions, config=config)
    await orchestrator.initialize()
    try:
        instance = await orchestrator.start("acct", workflow_type="flaky-store")
        await eventually(_is(repo, "acct", WorkflowStatus.COMPLETED), timeout=3.0)

        tasks = await repo.list_tasks(instance.id)
        assert [(t.step_id, t.status) for t in tasks] == [
            ("a", TaskStatus.COMPLETED),
            ("b", TaskStatus.COMPLETED),
        ]
        assert len(actions.calls_for("apply_content_a")) == 2
        log = await repo.list_execution_log(instance.id)
        assert [(e.step_id, e.success) for e in log] == [("a", True), ("b", True)]
        assert "task_error" in [a.type for a in orchestrator.get_alerts()]
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_trailing_parallel_step_runs_after_completion(
    orchestrator, repo, actions, eventually, definition_factory
):
    await repo.save_definition(
        definition_factory(
            "tail",
            Step(id="w", action="wait"),
            Step(id="bg", action="generate_content_a", parallel=True),
        )
    )
    await orchestrator.initialize(start_background=False)
    try:
        instance = await orchestrator.start("acct", workflow_type="tail")

        async def settled():
            tasks = await repo.list_tasks(instance.id)
            return {t.step_id: t.status for t in tasks} == {
                "w": TaskStatus.COMPLETED,
                "bg": TaskStatus.COMPLETED,
            }

        await eventually(settled)
        assert await _status(repo, "acct") == WorkflowStatus.COMPLETED
        assert len(actions.calls_for("apply_content_a")) == 1
        log = await repo.list_execution_log(instance.id)
        assert sorted(e.step_id for e in log) == ["bg", "w"]
        assert all(e.success for e in log)
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_parallel_step_dropped_after_stop(orchestrator, repo, actions, definition_factory):
    await repo.save_definition(
        definition_factory(
            "halted",
            Step(id="bg", action="generate_content_a", parallel=True, delay_ms=100),
            Step(id="w", action="wait", delay_ms=10_000),
        )
    )
    await orchestrator.initialize()
    try:
        instance = await orchestrator.start("acct", workflow_type="halted")
        await orchestrator.stop("acct")
        await asyncio.sleep(0.25)

        assert actions.calls == []
        statuses = {t.status for t in await repo.list_tasks(instance.id)}
        assert statuses == {TaskStatus.CANCELLED}
    finally:
        await orchestrator.shutdown()
