"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.STOPPED}
)
LIVE_STATUSES = frozenset(
    {WorkflowStatus.ACTIVE, WorkflowStatus.PAUSED, WorkflowStatus.RECOVERING}
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskKind(str, Enum):
    STEP = "step"
    RETRY = "retry"
    PARALLEL = "parallel"


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str = Field(default_factory=_new_id)
    account_id: str
    workflow_type: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_step_index: int = 0
    total_steps: int = 0
    account_data: dict[str, Any] = Field(default_factory=dict)
    execution_context: dict[str, int] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    next_action_at: Optional[datetime] = None
    next_task_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    recovered_at: Optional[datetime] = None
    last_error: Optional[str] = None
    final_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def finished_at(self) -> Optional[datetime]:
        return self.completed_at or self.failed_at or self.stopped_at


INSTANCE_FIELDS = frozenset(WorkflowInstance.model_fields)


class ScheduledTask(BaseModel):
    """Durable record that a step should fire at ``scheduled_for``."""

    task_id: str = Field(default_factory=_new_id)
    workflow_instance_id: str
    account_id: str
    step_id: str
    step_index: int
    action: str
    kind: TaskKind = TaskKind.STEP
    scheduled_for: datetime
    status: TaskStatus = TaskStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class ExecutionLogEntry(BaseModel):
    """Record of an individual step attempt."""

    id: Optional[int] = None
    workflow_instance_id: str
    account_id: str
    step_id: str
    step_index: int
    action: str
    success: bool
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    duration_ms: int = 0
    attempt: int = 1
    executed_at: datetime = Field(default_factory=utcnow)


class Lock(BaseModel):
    key: str
    holder: str
    expires_at: datetime
    acquired_at: datetime = Field(default_factory=utcnow)
