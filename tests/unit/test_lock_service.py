import asyncio

import pytest

from growthflow.config import LockConfig
from growthflow.errors import LockContentionError
from growthflow.locks import LockService, make_holder_id, start_lock_key, step_lock_key


def test_key_formats():
    assert start_lock_key("acct-1") == "workflow:acct-1:start"
    assert step_lock_key("acct-1") == "workflow:acct-1:step"


def test_holder_ids_are_unique():
    assert make_holder_id() != make_holder_id()


@pytest.mark.asyncio
async def test_second_holder_is_refused(repo):
    first = LockService(repo, holder="one")
    second = LockService(repo, holder="two")

    await first.acquire("k", ttl_seconds=30)
    with pytest.raises(LockContentionError) as excinfo:
        await second.acquire("k", ttl_seconds=30)

    assert excinfo.value.key == "k"
    assert excinfo.value.holder == "one"
    assert "Duplicate execution in progress" in str(excinfo.value)


@pytest.mark.asyncio
async def test_same_process_cannot_reenter(repo):
    locks = LockService(repo)
    await locks.acquire("k", ttl_seconds=30)
    assert not await locks.try_acquire("k", ttl_seconds=30)


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed(repo):
    crashed = LockService(repo, holder="crashed")
    survivor = LockService(repo, holder="survivor")

    await crashed.acquire("k", ttl_seconds=0.05)
    await asyncio.sleep(0.1)
    await survivor.acquire("k", ttl_seconds=30)

    assert await repo.get_lock_holder("k") == "survivor"
    assert not await crashed.release("k")


@pytest.mark.asyncio
async def test_with_lock_releases_on_error(repo):
    locks = LockService(repo)

    with pytest.raises(RuntimeError):
        async with locks.with_lock("k", ttl_seconds=30):
            raise RuntimeError("boom")

    assert await repo.get_lock_holder("k") is None
    assert locks.held_keys == set()


@pytest.mark.asyncio
async def test_waiting_acquire_gets_lock_once_released(repo):
    config = LockConfig(poll_interval_seconds=0.005)
    holder = LockService(repo, config, holder="holder")
    waiter = LockService(repo, config, holder="waiter")
    await holder.acquire("k", ttl_seconds=30)

    async def release_soon():
        await asyncio.sleep(0.03)
        await holder.release("k")

    releaser = asyncio.create_task(release_soon())
    await waiter.acquire("k", ttl_seconds=30, wait_seconds=1.0)
    await releaser

    assert await repo.get_lock_holder("k") == "waiter"


@pytest.mark.asyncio
async def test_waiting_acquire_gives_up(repo):
    config = LockConfig(poll_interval_seconds=0.005)
    await LockService(repo, config, holder="holder").acquire("k", ttl_seconds=30)

    with pytest.raises(LockContentionError):
        await LockService(repo, config).acquire("k", ttl_seconds=30, wait_seconds=0.03)


@pytest.mark.asyncio
async def test_release_all_and_cleanup(repo):
    locks = LockService(repo, holder="me")
    await locks.acquire("a", ttl_seconds=30)
    await locks.acquire("b", ttl_seconds=30)
    await LockService(repo, holder="other").acquire("c", ttl_seconds=0.01)
    await asyncio.sleep(0.03)

    assert await locks.release_all() == 2
    assert await locks.cleanup_expired() == 1
    assert await repo.get_lock_holder("a") is None
