"""Step execution: dispatch by action kind and the goto state machine."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Dict, Optional

from .actions.base import ActionClient
from .config import GrowthflowConfig
from .contracts import (
    CONTENT_ACTIONS,
    TOGGLE_ACTIONS,
    ActionResult,
    Step,
    StepAction,
    StepResult,
    WorkflowDefinition,
)
from .errors import LoopLimitError, StepError, StepValidationError, TransientStepError
from .events import EventBus, EventType, WorkflowEvent
from .persistence.models import ExecutionLogEntry, WorkflowInstance
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def goto_key(step_id: str, target_step_id: str) -> str:
    return f"{step_id}_to_{target_step_id}"


class ExecutionService:
    """Run a single step against the action collaborators.

    Every call appends exactly one execution log entry, whether the step
    succeeds or raises. A goto mutates the passed instance in place
    (``current_step_index`` and ``execution_context``); persisting that is
    left to the caller.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        actions: ActionClient,
        config: Optional[GrowthflowConfig] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self._repository = repository
        self._actions = actions
        self._config = config or GrowthflowConfig()
        self._events = events or EventBus()

    async def execute_step(
        self,
        instance: WorkflowInstance,
        step: Step,
        definition: WorkflowDefinition,
        attempt: int = 1,
    ) -> StepResult:
        step_index = definition.index_of(step.id)
        if step_index is None:
            step_index = instance.current_step_index
        started = time.perf_counter()
        redirected = False
        try:
            if step.kind == StepAction.GOTO:
                result = self._goto(instance, step, step_index, definition)
                redirected = True
            else:
                result = await self._dispatch(instance, step)
        except StepError as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            await self._log(instance, step, step_index, attempt, duration_ms, error=e.message)
            logger.warning(
                f"Step {step.id} ({step.action}) failed for account {instance.account_id} "
                f"on attempt {attempt}: {e.message}"
            )
            await self._events.publish(
                WorkflowEvent(
                    type=EventType.STEP_FAILED,
                    account_id=instance.account_id,
                    instance_id=instance.id,
                    workflow_type=instance.workflow_type,
                    step_id=step.id,
                    action=step.action,
                    success=False,
                    duration_ms=duration_ms,
                    error=e.message,
                    data={"attempt": attempt, "critical": step.critical},
                )
            )
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        await self._log(instance, step, step_index, attempt, duration_ms, result=result)
        logger.info(
            f"Step {step.id} ({step.action}) executed for account {instance.account_id} "
            f"in {duration_ms}ms"
        )
        await self._events.publish(
            WorkflowEvent(
                type=EventType.STEP_EXECUTED,
                account_id=instance.account_id,
                instance_id=instance.id,
                workflow_type=instance.workflow_type,
                step_id=step.id,
                action=step.action,
                success=True,
                duration_ms=duration_ms,
                data={"attempt": attempt},
            )
        )
        return StepResult(
            step_id=step.id,
            step_index=step_index,
            action=step.action,
            result=result,
            duration_ms=duration_ms,
            redirected=redirected,
        )

    # ------------------------------------------------------------------
    def timeout_ms_for(self, step: Step) -> int:
        """Collaborator timeout for ``step``: its own, else the per-kind default."""
        if step.timeout_ms is not None:
            return step.timeout_ms
        timeouts = self._config.timeouts
        if step.kind in CONTENT_ACTIONS:
            return timeouts.content_ms
        if step.kind in TOGGLE_ACTIONS:
            return timeouts.toggle_ms
        return timeouts.batch_ms

    def _goto(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_index: int,
        definition: WorkflowDefinition,
    ) -> Dict[str, Any]:
        if not step.next_step_id:
            raise StepValidationError("nextStep is required for goto action")
        target_index = definition.index_of(step.next_step_id)
        if target_index is None:
            raise StepValidationError(f"Invalid nextStep: {step.next_step_id}")

        key = goto_key(step.id, step.next_step_id)
        count = instance.execution_context.get(key, 0)
        if not step.infinite_allowed:
            max_iterations = step.max_iterations
            if max_iterations is None:
                max_iterations = self._config.goto.default_max_iterations
            if count >= max_iterations:
                raise LoopLimitError(
                    f"Goto loop limit exceeded: {key} ({count}/{max_iterations})"
                )

        instance.execution_context = {**instance.execution_context, key: count + 1}
        instance.current_step_index = target_index
        return {
            "next_step": step.next_step_id,
            "target_step_index": target_index,
            "loop_created": target_index <= step_index,
            "iteration": count + 1,
        }

    async def _dispatch(self, instance: WorkflowInstance, step: Step) -> Dict[str, Any]:
        kind = step.kind
        if kind is None:
            raise StepValidationError(f"Unknown step action: {step.action}")
        if kind == StepAction.WAIT:
            return {"waited_ms": step.delay_ms}

        params = self._build_params(instance, step)
        account_id = instance.account_id
        call: Awaitable[ActionResult]
        if kind == StepAction.GENERATE_CONTENT_A:
            call = self._actions.apply_content_a(account_id, params)
        elif kind == StepAction.GENERATE_CONTENT_B:
            call = self._actions.apply_content_b(account_id, params)
        elif kind == StepAction.RUN_BATCH_ACTION:
            call = self._actions.run_batch_action(account_id, params)
        else:
            on = kind == StepAction.TOGGLE_CONTINUOUS_ACTION_ON
            call = self._actions.toggle_continuous_action(account_id, on, params)
        return await self._call_collaborator(step, call)

    async def _call_collaborator(
        self, step: Step, call: Awaitable[ActionResult]
    ) -> Dict[str, Any]:
        timeout_ms = self.timeout_ms_for(step)
        try:
            outcome = await asyncio.wait_for(call, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise TransientStepError(
                f"Action {step.action} timed out after {timeout_ms}ms"
            ) from e
        except StepError:
            raise
        except Exception as e:
            raise TransientStepError(f"Action {step.action} failed: {e}") from e

        if not isinstance(outcome, ActionResult):
            raise TransientStepError(
                f"Action {step.action} returned {type(outcome).__name__}, not ActionResult"
            )
        if not outcome.success:
            raise TransientStepError(outcome.error or f"Action {step.action} reported failure")
        return dict(outcome.payload)

    def _build_params(self, instance: WorkflowInstance, step: Step) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            **step.params,
            "step_id": step.id,
            "account_data": instance.account_data,
        }
        if step.description:
            params["description"] = step.description
        kind = step.kind
        if kind == StepAction.RUN_BATCH_ACTION:
            params["count"] = self._batch_count(step)
        elif kind in TOGGLE_ACTIONS:
            if step.min_count is not None and step.max_count is not None:
                params["count"] = random.randint(
                    min(step.min_count, step.max_count), max(step.min_count, step.max_count)
                )
            if step.min_interval_ms is not None:
                params["min_interval_ms"] = step.min_interval_ms
            if step.max_interval_ms is not None:
                params["max_interval_ms"] = step.max_interval_ms
        return params

    @staticmethod
    def _batch_count(step: Step) -> int:
        if step.batch_size is not None:
            return step.batch_size
        if step.min_count is not None and step.max_count is not None:
            low, high = sorted((step.min_count, step.max_count))
            return random.randint(low, high)
        raise StepValidationError(
            "batch_size or min_count/max_count is required for run_batch_action"
        )

    async def _log(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_index: int,
        attempt: int,
        duration_ms: int,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self._repository.append_execution_log(
            ExecutionLogEntry(
                workflow_instance_id=instance.id,
                account_id=instance.account_id,
                step_id=step.id,
                step_index=step_index,
                action=step.action,
                success=error is None,
                result=result,
                error_message=error,
                duration_ms=duration_ms,
                attempt=attempt,
            )
        )
