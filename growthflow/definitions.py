"""Built-in workflow definitions, YAML loading and a time-based cache."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Tuple

import yaml

from .contracts import Step, WorkflowDefinition
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

DEFAULT_DEFINITIONS: List[WorkflowDefinition] = [
    WorkflowDefinition(
        type="default",
        name="Default Account Automation",
        description="1h wait, content A, three batches, continuous action, content B after 24h",
        steps=[
            Step(id="wait_after_import", action="wait", delay_ms=HOUR_MS),
            Step(id="apply_content_a", action="generate_content_a", critical=True),
            Step(id="wait_before_first_batch", action="wait", delay_ms=15 * MINUTE_MS),
            Step(id="first_batch_10", action="run_batch_action", batch_size=10),
            Step(id="wait_before_second_batch", action="wait", delay_ms=HOUR_MS),
            Step(id="second_batch_20", action="run_batch_action", batch_size=20),
            Step(id="wait_before_third_batch", action="wait", delay_ms=HOUR_MS),
            Step(id="third_batch_20", action="run_batch_action", batch_size=20),
            Step(
                id="continuous_mode",
                action="toggle_continuous_action_on",
                min_count=20,
                max_count=30,
                min_interval_ms=90 * MINUTE_MS,
                max_interval_ms=180 * MINUTE_MS,
            ),
            Step(
                id="apply_content_b_after_24h",
                action="generate_content_b",
                delay_ms=24 * HOUR_MS,
            ),
        ],
    ),
    WorkflowDefinition(
        type="aggressive",
        name="Aggressive Account Automation",
        description="Shorter delays for faster ramp-up",
        steps=[
            Step(id="wait_after_import", action="wait", delay_ms=5 * MINUTE_MS),
            Step(id="apply_content_a", action="generate_content_a", critical=True),
            Step(id="first_batch_15", action="run_batch_action", batch_size=15),
            Step(id="apply_content_b_fast", action="generate_content_b", delay_ms=HOUR_MS),
            Step(
                id="continuous_mode",
                action="toggle_continuous_action_on",
                min_count=25,
                max_count=35,
                min_interval_ms=30 * MINUTE_MS,
                max_interval_ms=60 * MINUTE_MS,
            ),
        ],
    ),
    WorkflowDefinition(
        type="test",
        name="Test Workflow",
        description="Very fast workflow for development",
        steps=[
            Step(id="wait_after_import", action="wait", delay_ms=30 * 1000),
            Step(id="apply_content_a", action="generate_content_a"),
            Step(id="test_batch_5", action="run_batch_action", batch_size=5),
            Step(id="apply_content_b_test", action="generate_content_b", delay_ms=2 * MINUTE_MS),
        ],
    ),
]


def load_definitions_file(path: str | Path) -> List[WorkflowDefinition]:
    """Parse workflow definitions from a YAML file.

    The file may hold a single definition, a list of definitions, or a
    mapping with a ``definitions`` list.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("definitions", [data])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a definition or a list of definitions")
    return [WorkflowDefinition.model_validate(item) for item in data]


async def seed_default_definitions(
    repository: WorkflowRepository, overwrite: bool = False
) -> int:
    """Store the built-in definitions that the repository does not have yet."""
    saved = 0
    for definition in DEFAULT_DEFINITIONS:
        if not overwrite and await repository.get_definition(definition.type) is not None:
            continue
        await repository.save_definition(definition)
        saved += 1
    if saved:
        logger.info(f"Seeded {saved} built-in workflow definitions")
    return saved


class DefinitionCache:
    """Read-through cache of definitions with a time-based refresh."""

    def __init__(self, repository: WorkflowRepository, ttl_seconds: float = 300.0) -> None:
        self._repository = repository
        self._ttl = ttl_seconds
        self._entries: Dict[str, Tuple[float, WorkflowDefinition]] = {}

    async def get(self, workflow_type: str) -> WorkflowDefinition | None:
        entry = self._entries.get(workflow_type)
        now = time.monotonic()
        if entry is not None and now - entry[0] < self._ttl:
            return entry[1]
        definition = await self._repository.get_definition(workflow_type)
        if definition is None:
            self._entries.pop(workflow_type, None)
            return None
        self._entries[workflow_type] = (now, definition)
        return definition

    def invalidate(self, workflow_type: str | None = None) -> None:
        if workflow_type is None:
            self._entries.clear()
        else:
            self._entries.pop(workflow_type, None)
