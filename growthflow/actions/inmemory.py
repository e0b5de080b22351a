"""In-memory action client for development and tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..contracts import ActionResult
from .base import ActionClient


@dataclass
class ActionCall:
    method: str
    account_id: str
    params: Dict[str, Any]
    on: Optional[bool] = None


@dataclass
class _Behaviour:
    fail: bool = False
    error: str = "simulated failure"
    raises: Optional[Exception] = None
    stall_seconds: float = 0.0


class InMemoryActionClient(ActionClient):
    """Records every call and succeeds unless told otherwise."""

    METHODS = (
        "apply_content_a",
        "apply_content_b",
        "run_batch_action",
        "toggle_continuous_action",
    )

    def __init__(self) -> None:
        self.calls: List[ActionCall] = []
        self._behaviour: Dict[str, _Behaviour] = {}

    def fail(self, method: str, error: str = "simulated failure") -> None:
        """Make ``method`` report failure on every call."""
        self._check(method)
        self._behaviour[method] = _Behaviour(fail=True, error=error)

    def raise_on(self, method: str, exc: Exception) -> None:
        self._check(method)
        self._behaviour[method] = _Behaviour(raises=exc)

    def stall(self, method: str, seconds: float) -> None:
        """Delay ``method`` so callers can exercise their timeouts."""
        self._check(method)
        self._behaviour[method] = _Behaviour(stall_seconds=seconds)

    def reset(self, method: Optional[str] = None) -> None:
        if method is None:
            self._behaviour.clear()
        else:
            self._behaviour.pop(method, None)

    def calls_for(self, method: str) -> List[ActionCall]:
        return [c for c in self.calls if c.method == method]

    def _check(self, method: str) -> None:
        if method not in self.METHODS:
            raise ValueError(f"Unknown action method: {method}")

    async def _record(
        self, method: str, account_id: str, params: Dict[str, Any], on: Optional[bool] = None
    ) -> ActionResult:
        self.calls.append(ActionCall(method, account_id, dict(params), on))
        behaviour = self._behaviour.get(method)
        if behaviour is None:
            return ActionResult(success=True, payload={"method": method, **params})
        if behaviour.stall_seconds:
            await asyncio.sleep(behaviour.stall_seconds)
        if behaviour.raises is not None:
            raise behaviour.raises
        if behaviour.fail:
            return ActionResult(success=False, error=behaviour.error)
        return ActionResult(success=True, payload={"method": method, **params})

    async def apply_content_a(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        return await self._record("apply_content_a", account_id, params)

    async def apply_content_b(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        return await self._record("apply_content_b", account_id, params)

    async def run_batch_action(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        return await self._record("run_batch_action", account_id, params)

    async def toggle_continuous_action(
        self, account_id: str, on: bool, params: Dict[str, Any]
    ) -> ActionResult:
        return await self._record("toggle_continuous_action", account_id, params, on=on)
