"""Lifecycle events and the observer bus the monitoring layer listens on."""

from __future__ import annotations

import logging
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_STOPPED = "workflow_stopped"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_RECOVERED = "workflow_recovered"
    STEP_EXECUTED = "step_executed"
    STEP_FAILED = "step_failed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"


class WorkflowEvent(BaseModel):
    """Something that happened to a workflow instance."""

    type: EventType
    account_id: str
    instance_id: str
    workflow_type: Optional[str] = None
    step_id: Optional[str] = None
    action: Optional[str] = None
    success: Optional[bool] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowObserver(Protocol):
    """Anything that wants to hear about workflow lifecycle events."""

    async def on_event(self, event: WorkflowEvent) -> None:
        ...


class EventBus:
    """Deliver events to subscribed observers in subscription order.

    Observers are isolated from publishers: an observer that raises is
    logged and skipped, the publisher never sees the error.
    """

    def __init__(self) -> None:
        self._observers: List[WorkflowObserver] = []

    def subscribe(self, observer: WorkflowObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: WorkflowObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def publish(self, event: WorkflowEvent) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_event(event)
            except Exception:
                logger.exception(
                    f"Observer {type(observer).__name__} failed handling {event.type.value}"
                )
