"""Tests for oc_pipeline.queue."""

from __future__ import annotations

import asyncio

import pytest

from oc_pipeline.queue import BoundedEventQueue
from oc_shared.errors import QueueClosedError


class TestBoundedEventQueue:
    @pytest.mark.asyncio
    async def test_fifo(self) -> None:
        queue: BoundedEventQueue[int] = BoundedEventQueue(capacity=10)
        for i in range(5):
            assert await queue.offer(i)
        assert [await queue.take() for _ in range(5)] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_offer_suspends_at_capacity_without_dropping(self) -> None:
        queue: BoundedEventQueue[int] = BoundedEventQueue(capacity=1000)
        for i in range(1000):
            await queue.offer(i)
        assert queue.full()

        blocked = asyncio.create_task(queue.offer(1000))
        await asyncio.sleep(0.05)
        assert not blocked.done()
        assert queue.size == 1000

        assert await queue.take() == 0
        assert await asyncio.wait_for(blocked, timeout=1.0) is True
        assert queue.size == 1000

        drained = [await queue.take() for _ in range(1000)]
        assert drained == list(range(1, 1001))

    @pytest.mark.asyncio
    async def test_take_suspends_when_empty(self) -> None:
        queue: BoundedEventQueue[str] = BoundedEventQueue(capacity=2)
        waiter = asyncio.create_task(queue.take())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        await queue.offer("x")
        assert await asyncio.wait_for(waiter, timeout=1.0) == "x"

    @pytest.mark.asyncio
    async def test_close_releases_blocked_producer(self) -> None:
        queue: BoundedEventQueue[int] = BoundedEventQueue(capacity=1)
        await queue.offer(1)
        blocked = asyncio.create_task(queue.offer(2))
        await asyncio.sleep(0.01)
        await queue.close()
        assert await asyncio.wait_for(blocked, timeout=1.0) is False

    @pytest.mark.asyncio
    async def test_take_after_close_drains_then_raises(self) -> None:
        queue: BoundedEventQueue[int] = BoundedEventQueue(capacity=3)
        await queue.offer(1)
        await queue.close()
        assert await queue.take() == 1
        with pytest.raises(QueueClosedError):
            await queue.take()

    @pytest.mark.asyncio
    async def test_async_iteration_stops_on_close(self) -> None:
        queue: BoundedEventQueue[int] = BoundedEventQueue(capacity=5)
        for i in range(3):
            await queue.offer(i)
        await queue.close()
        assert [item async for item in queue] == [0, 1, 2]

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            BoundedEventQueue(capacity=0)
