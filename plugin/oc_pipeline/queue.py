"""Bounded FIFO between the event source and the processor.

A full queue suspends the producer instead of dropping events. Closing the
queue wakes every waiter: pending ``offer()`` calls return ``False`` and
``take()`` raises ``QueueClosedError`` once the remaining events are drained.

Concurrency: coroutine-safe (one event loop), not thread-safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Generic, TypeVar

from oc_shared.errors import QueueClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 1000


class BoundedEventQueue(Generic[T]):
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def full(self) -> bool:
        return len(self._items) >= self._capacity

    async def offer(self, item: T) -> bool:
        async with self._cond:
            if self.full() and not self._closed:
                logger.debug("queue full, producer waiting", extra={"capacity": self._capacity})
            while self.full() and not self._closed:
                await self._cond.wait()
            if self._closed:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    async def take(self) -> T:
        async with self._cond:
            while not self._items and not self._closed:
                await self._cond.wait()
            if not self._items:
                raise QueueClosedError("queue is closed")
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            try:
                yield await self.take()
            except QueueClosedError:
                return
