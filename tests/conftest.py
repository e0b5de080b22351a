import asyncio
import time

import pytest

import growthflow.persistence as persistence
from growthflow.actions import InMemoryActionClient
from growthflow.config import (
    GrowthflowConfig,
    LockConfig,
    RetryConfig,
    SchedulerConfig,
)
from growthflow.contracts import Step, WorkflowDefinition
from growthflow.orchestrator import WorkflowOrchestrator
from growthflow.persistence import InMemoryWorkflowRepository


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from any config file or database of the host."""
    monkeypatch.setenv("GROWTHFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("GROWTHFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def config() -> GrowthflowConfig:
    return GrowthflowConfig(
        scheduler=SchedulerConfig(poll_interval_seconds=0.05, definition_cache_ttl_seconds=0),
        retry=RetryConfig(max_retries=3, base_backoff_ms=10, max_backoff_ms=80),
        locks=LockConfig(
            step_wait_seconds=2.0, control_wait_seconds=2.0, poll_interval_seconds=0.005
        ),
    )


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def actions() -> InMemoryActionClient:
    return InMemoryActionClient()


@pytest.fixture
def orchestrator(repo, actions, config) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(repository=repo, actions=actions, config=config)


@pytest.fixture
def eventually():
    """Poll an async or sync predicate until it holds or time runs out."""

    async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if time.monotonic() >= deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually


def make_definition(workflow_type: str, *steps: Step, **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(type=workflow_type, name=workflow_type, steps=list(steps), **kwargs)


@pytest.fixture
def definition_factory():
    return make_definition
