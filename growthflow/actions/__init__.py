"""Action collaborators used by step execution."""

from __future__ import annotations

import importlib
from typing import Optional

from .base import ActionClient
from .inmemory import ActionCall, InMemoryActionClient


def load_action_client(path: Optional[str] = None) -> ActionClient:
    """Build an action client from a ``module:attribute`` import path.

    The attribute may be an ``ActionClient`` instance or a zero-argument
    factory (a class or function). Without a path the in-memory client is
    returned.
    """

    if not path:
        return InMemoryActionClient()
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Action client path must look like 'module:attribute': {path}")
    target = getattr(importlib.import_module(module_name), attr)
    client = target if isinstance(target, ActionClient) else target()
    if not isinstance(client, ActionClient):
        raise TypeError(f"{path} did not produce an ActionClient")
    return client


__all__ = ["ActionCall", "ActionClient", "InMemoryActionClient", "load_action_client"]
