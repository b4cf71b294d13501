"""Retry wrapper around a :class:`TraceSink`.

Every operation is retried on its own with exponential backoff and jitter.
Record creation only enqueues into the SDK batch, so it runs inline;
``flush`` and ``shutdown`` block on network I/O and run in a worker thread.
Once the attempt budget is spent the failure is logged and raised as
:class:`SinkApiError`.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from oc_shared.errors import SinkApiError

from .records import GenerationRecord, SpanRecord, TraceRecord, TraceSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: float = 0.5  # must stay below 1 so delays keep increasing

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        uncapped = self.base_delay_s * (2 ** (attempt - 1)) * (1 + rng() * self.jitter)
        return min(self.max_delay_s, uncapped)

    @classmethod
    def from_ms(cls, attempts: int, base_ms: int, max_ms: int) -> "RetryPolicy":
        return cls(attempts=attempts, base_delay_s=base_ms / 1000.0, max_delay_s=max_ms / 1000.0)


class SinkClient:
    def __init__(
        self,
        sink: Optional[TraceSink],
        policy: RetryPolicy = RetryPolicy(),
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._sink = sink
        self._policy = policy
        self._sleep = sleep
        self._rng = rng

    @property
    def is_connected(self) -> bool:
        return self._sink is not None

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def create_trace(self, record: TraceRecord) -> None:
        if self._sink is not None:
            await self._call("create_trace", lambda: self._sink.create_trace(record))

    async def create_generation(self, record: GenerationRecord) -> None:
        if self._sink is not None:
            await self._call("create_generation", lambda: self._sink.create_generation(record))

    async def create_span(self, record: SpanRecord) -> None:
        if self._sink is not None:
            await self._call("create_span", lambda: self._sink.create_span(record))

    async def flush(self) -> None:
        if self._sink is not None:
            await self._call("flush", self._sink.flush, blocking=True)

    async def shutdown(self) -> None:
        if self._sink is not None:
            await self._call("shutdown", self._sink.shutdown, blocking=True)

    async def _call(self, operation: str, fn: Callable[[], object], *, blocking: bool = False) -> None:
        attempts = self._policy.attempts
        last_err: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                if blocking:
                    await asyncio.to_thread(fn)
                else:
                    fn()
                if attempt > 1:
                    logger.info(f"{operation} succeeded on attempt {attempt}/{attempts}")
                return
            except Exception as err:
                last_err = err
                if attempt >= attempts:
                    break
                delay = self._policy.delay(attempt, self._rng)
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s",
                    extra={"operation": operation, "error": repr(err)},
                )
                await self._sleep(delay)
        logger.error(
            f"{operation} giving up after {attempts} attempts",
            extra={"operation": operation, "attempts": attempts, "error": repr(last_err)},
        )
        raise SinkApiError(operation, attempts, last_err)
