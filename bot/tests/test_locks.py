from __future__ import annotations

import asyncio

import pytest

from utils.locks import KeyedLocks


@pytest.mark.asyncio
async def test_lock_is_dropped_after_last_user() -> None:
    locks = KeyedLocks()

    async with locks.hold("a"):
        assert "a" in locks

    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiters_keep_the_lock_alive() -> None:
    locks = KeyedLocks()
    order: list[str] = []
    release = asyncio.Event()

    async def first() -> None:
        async with locks.hold("a"):
            order.append("first")
            await release.wait()

    async def second() -> None:
        async with locks.hold("a"):
            order.append("second")

    task_one = asyncio.create_task(first())
    await asyncio.sleep(0)
    task_two = asyncio.create_task(second())
    await asyncio.sleep(0)

    assert "a" in locks
    release.set()
    await asyncio.gather(task_one, task_two)

    assert order == ["first", "second"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_is_dropped_when_body_raises() -> None:
    locks = KeyedLocks()

    with pytest.raises(RuntimeError):
        async with locks.hold("a"):
            raise RuntimeError("boom")

    assert len(locks) == 0
