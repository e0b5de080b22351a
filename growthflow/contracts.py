"""Core contracts for growthflow workflow definitions and step results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class StepAction(str, Enum):
    """Action kinds a step can perform."""

    WAIT = "wait"
    GENERATE_CONTENT_A = "generate_content_a"
    GENERATE_CONTENT_B = "generate_content_b"
    RUN_BATCH_ACTION = "run_batch_action"
    TOGGLE_CONTINUOUS_ACTION_ON = "toggle_continuous_action_on"
    TOGGLE_CONTINUOUS_ACTION_OFF = "toggle_continuous_action_off"
    GOTO = "goto"


CONTENT_ACTIONS = {StepAction.GENERATE_CONTENT_A, StepAction.GENERATE_CONTENT_B}
TOGGLE_ACTIONS = {
    StepAction.TOGGLE_CONTINUOUS_ACTION_ON,
    StepAction.TOGGLE_CONTINUOUS_ACTION_OFF,
}


class Step(BaseModel):
    """Defines one step in a workflow.

    ``action`` is kept as a plain string so that definitions carrying an
    action this engine does not know still load; execution rejects them.
    """

    id: str
    action: str
    delay_ms: int = 0
    critical: bool = False
    parallel: bool = False
    description: Optional[str] = None
    timeout_ms: Optional[int] = None

    batch_size: Optional[int] = None
    min_count: Optional[int] = None
    max_count: Optional[int] = None
    min_interval_ms: Optional[int] = None
    max_interval_ms: Optional[int] = None

    next_step_id: Optional[str] = None
    infinite_allowed: bool = True
    max_iterations: Optional[int] = None

    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> Optional[StepAction]:
        """The known action kind, or ``None`` for unknown actions."""
        try:
            return StepAction(self.action)
        except ValueError:
            return None

    @property
    def has_random_interval(self) -> bool:
        return (
            self.kind in TOGGLE_ACTIONS
            and self.min_interval_ms is not None
            and self.max_interval_ms is not None
        )


class WorkflowDefinition(BaseModel):
    """Immutable template of ordered steps."""

    type: str
    name: str
    description: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    max_retries: Optional[int] = None
    retry_backoff_ms: Optional[int] = None

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in workflow {self.type}")
            seen.add(step.id)
        return self

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def index_of(self, step_id: str) -> Optional[int]:
        """Return the position of ``step_id`` or ``None`` when absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def step_at(self, index: int) -> Optional[Step]:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None


class ActionResult(BaseModel):
    """What an action collaborator reports back for one call."""

    success: bool
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class StepResult(BaseModel):
    """Structured outcome of a successful step execution."""

    step_id: str
    step_index: int
    action: str
    success: bool = True
    result: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    redirected: bool = False


class InstanceStatus(BaseModel):
    """Read-only projection of a workflow instance for operators."""

    instance_id: str
    account_id: str
    workflow_type: str
    status: str
    current_step_index: int
    total_steps: int
    current_step_id: Optional[str] = None
    progress: float = 0.0
    retry_count: int = 0
    max_retries: int = 0
    next_action_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    final_error: Optional[str] = None
    timer_armed: bool = False
    execution_context: Dict[str, int] = Field(default_factory=dict)
