"""Cooperative per-account locks backed by the repository."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set

from .config import LockConfig
from .constants import START_LOCK_KEY, STEP_LOCK_KEY
from .errors import LockContentionError
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def make_holder_id() -> str:
    """Identifier unique to this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def start_lock_key(account_id: str) -> str:
    return START_LOCK_KEY.format(account_id=account_id)


def step_lock_key(account_id: str) -> str:
    return STEP_LOCK_KEY.format(account_id=account_id)


class LockService:
    """Acquire and release advisory locks with expiry.

    Acquisition is a single atomic insert-if-absent-or-expired in the
    repository, so a crashed holder's lock is reclaimed by the next caller
    once its TTL runs out.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[LockConfig] = None,
        holder: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._config = config or LockConfig()
        self.holder = holder or make_holder_id()
        self._held: Set[str] = set()

    @property
    def held_keys(self) -> Set[str]:
        return set(self._held)

    async def try_acquire(self, key: str, ttl_seconds: float) -> bool:
        acquired = await self._repository.acquire_lock(key, self.holder, ttl_seconds)
        if acquired:
            self._held.add(key)
        return acquired

    async def acquire(self, key: str, ttl_seconds: float, wait_seconds: float = 0.0) -> None:
        """Acquire ``key`` or raise ``LockContentionError``.

        With ``wait_seconds`` the call polls until the lock frees up or the
        wait runs out.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            if await self.try_acquire(key, ttl_seconds):
                return
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self._config.poll_interval_seconds)
        holder = await self._repository.get_lock_holder(key)
        logger.warning(f"Lock {key} is held by {holder}")
        raise LockContentionError(key, holder)

    async def release(self, key: str) -> bool:
        self._held.discard(key)
        released = await self._repository.release_lock(key, self.holder)
        if not released:
            logger.debug(f"Lock {key} was not held by {self.holder} at release")
        return released

    @asynccontextmanager
    async def with_lock(
        self, key: str, ttl_seconds: float, wait_seconds: float = 0.0
    ) -> AsyncIterator[None]:
        await self.acquire(key, ttl_seconds, wait_seconds)
        try:
            yield
        finally:
            await self.release(key)

    def start_lock(self, account_id: str):
        """Guard a workflow start for ``account_id``; never waits."""
        return self.with_lock(start_lock_key(account_id), self._config.start_ttl_seconds)

    def step_lock(self, account_id: str, wait_seconds: Optional[float] = None):
        """Guard step execution and instance mutation for ``account_id``."""
        wait = self._config.step_wait_seconds if wait_seconds is None else wait_seconds
        return self.with_lock(step_lock_key(account_id), self._config.step_ttl_seconds, wait)

    async def release_all(self) -> int:
        """Drop every lock this process holds."""
        self._held.clear()
        released = await self._repository.release_locks_by_holder(self.holder)
        if released:
            logger.info(f"Released {released} locks held by {self.holder}")
        return released

    async def cleanup_expired(self) -> int:
        reaped = await self._repository.cleanup_expired_locks()
        if reaped:
            logger.info(f"Reaped {reaped} expired locks")
        return reaped
