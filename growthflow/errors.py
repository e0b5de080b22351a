"""Error taxonomy for the growthflow engine."""

from __future__ import annotations


class GrowthflowError(Exception):
    """Base class for all engine errors."""


class StepError(GrowthflowError):
    """A single step attempt failed.

    ``retryable`` tells the orchestrator whether a critical step may be
    attempted again with backoff.
    """

    retryable: bool = False

    def __init__(self, message: str, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class StepValidationError(StepError):
    """Bad goto target, missing parameter or unknown action."""

    retryable = False


class TransientStepError(StepError):
    """Collaborator timeout, network failure or reported failure."""

    retryable = True


class FatalStepError(StepError):
    """A transient failure that exhausted its retries."""

    retryable = False


class LoopLimitError(StepError):
    """A goto exceeded its ``max_iterations``."""

    retryable = False


class LockContentionError(GrowthflowError):
    """Another holder owns the lock: duplicate execution in progress."""

    def __init__(self, key: str, holder: str | None = None) -> None:
        message = f"Duplicate execution in progress: lock {key} is held"
        if holder:
            message += f" by {holder}"
        super().__init__(message)
        self.key = key
        self.holder = holder


class StaleTaskError(GrowthflowError):
    """Scheduled task whose instance is gone or no longer runnable."""


class WorkflowNotFoundError(GrowthflowError):
    """No workflow instance exists for the account."""


class DefinitionNotFoundError(GrowthflowError):
    """No workflow definition is registered under the requested type."""


class WorkflowAlreadyActiveError(GrowthflowError):
    """The account already has a non-terminal workflow instance."""


class DuplicateInstanceError(WorkflowAlreadyActiveError):
    """Raised by repositories when the per-account uniqueness check fails."""


class InvalidStateError(GrowthflowError):
    """Operation not allowed in the instance's current status."""
