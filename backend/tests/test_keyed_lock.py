"""Tests for per-session mutual exclusion."""

import asyncio

import pytest

from utils.keyed_lock import KeyedLock


@pytest.mark.asyncio
async def test_same_key_serializes_in_arrival_order():
    locks = KeyedLock()
    order = []

    async def worker(name, delay):
        async with locks.hold("session-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(delay)
            order.append(f"{name}-out")

    first = asyncio.create_task(worker("a", 0.05))
    await asyncio.sleep(0)
    second = asyncio.create_task(worker("b", 0))
    await asyncio.gather(first, second)

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    entered = asyncio.Event()

    async def holder():
        async with locks.hold("one"):
            await asyncio.wait_for(entered.wait(), timeout=1)

    async def other():
        async with locks.hold("two"):
            entered.set()

    await asyncio.gather(holder(), other())
    assert entered.is_set()


@pytest.mark.asyncio
async def test_idle_locks_are_released():
    locks = KeyedLock()
    async with locks.hold("a"):
        assert locks.is_locked("a")
        assert len(locks) == 1
    assert not locks.is_locked("a")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_released_when_body_raises():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("a"):
            raise RuntimeError("boom")
    assert len(locks) == 0
