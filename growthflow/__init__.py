"""growthflow: durable, resumable account-growth workflows."""

from .actions import ActionClient, InMemoryActionClient
from .config import GrowthflowConfig, load_config
from .contracts import ActionResult, InstanceStatus, Step, StepAction, StepResult, WorkflowDefinition
from .events import EventBus, EventType, WorkflowEvent, WorkflowObserver
from .orchestrator import WorkflowOrchestrator
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "ActionClient",
    "ActionResult",
    "EventBus",
    "EventType",
    "GrowthflowConfig",
    "InMemoryActionClient",
    "InstanceStatus",
    "Step",
    "StepAction",
    "StepResult",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowObserver",
    "WorkflowOrchestrator",
    "get_repository",
    "load_config",
]
