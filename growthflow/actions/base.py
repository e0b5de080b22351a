"""Base interface for the growth-platform action collaborators."""

from __future__ import annotations

import abc
from typing import Any, Dict

from ..contracts import ActionResult


class ActionClient(metaclass=abc.ABCMeta):
    """Abstract collaborator that performs account actions.

    Each call returns an ``ActionResult`` carrying a success flag and an
    opaque payload that ends up in the execution log.
    """

    async def connect(self) -> None:
        """Open connections to the platform (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connections to the platform (no-op by default)."""
        pass

    @abc.abstractmethod
    async def apply_content_a(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        """Generate and apply the first kind of content to an account."""
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_content_b(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        """Generate and apply the second kind of content to an account."""
        raise NotImplementedError

    @abc.abstractmethod
    async def run_batch_action(self, account_id: str, params: Dict[str, Any]) -> ActionResult:
        """Run a bounded batch of actions for an account."""
        raise NotImplementedError

    @abc.abstractmethod
    async def toggle_continuous_action(
        self, account_id: str, on: bool, params: Dict[str, Any]
    ) -> ActionResult:
        """Switch the continuous background action on or off.

        The engine calls this once per step. Repeating the action every
        ``min_interval_ms``..``max_interval_ms`` with ``count`` items per run
        is up to the client until it is switched off.
        """
        raise NotImplementedError
