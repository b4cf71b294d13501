from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from oc_langfuse.client import RetryPolicy, SinkClient
from oc_langfuse.records import TraceSink
from oc_langfuse.service import EventMapper
from oc_langfuse.trace_manager import LangfuseSink
from oc_logs.audit_log import AuditLog
from oc_shared.config import Settings
from oc_shared.errors import SinkApiError
from oc_shared.event_types import PluginEvent
from oc_shared.redaction import Redactor

from .ledger import ProcessedKeys
from .processor import DEFAULT_QUIET_PERIOD_S, EventProcessor
from .queue import DEFAULT_CAPACITY, BoundedEventQueue
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class PipelineRuntime:
    """Owns the queue, ledger, registry and sink client for one pipeline lifetime.

    Nothing here is global: tests build as many isolated runtimes as they
    like, and ``main`` builds exactly one.
    """

    def __init__(
        self,
        sink: Optional[TraceSink],
        *,
        queue_capacity: int = DEFAULT_CAPACITY,
        quiet_period_s: float = DEFAULT_QUIET_PERIOD_S,
        dedup_max_keys: Optional[int] = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        redactor: Optional[Redactor] = None,
        trace_name_prefix: str = "",
        audit: Optional[AuditLog] = None,
        flush_interval_s: float = 5.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.sink = sink
        self.queue: BoundedEventQueue[PluginEvent] = BoundedEventQueue(queue_capacity)
        self.ledger = ProcessedKeys(dedup_max_keys)
        self.registry = SessionRegistry()
        self.client = SinkClient(sink, retry_policy, sleep=sleep)
        self.audit = audit
        self.mapper = EventMapper(
            self.registry,
            self.client,
            redactor,
            trace_name_prefix=trace_name_prefix,
            audit=audit,
        )
        self.processor = EventProcessor(self.mapper.handle, ledger=self.ledger, quiet_period_s=quiet_period_s)
        self.flush_interval_s = flush_interval_s
        self._consumer: Optional["asyncio.Task[None]"] = None
        self._flusher: Optional["asyncio.Task[None]"] = None

    @classmethod
    def build(cls, settings: Settings, sink: Optional[TraceSink] = None) -> "PipelineRuntime":
        if sink is None:
            sink = LangfuseSink.create(settings.langfuse)
        pipeline = settings.pipeline
        audit = None
        if settings.audit_log:
            audit = AuditLog(
                settings.spool_dir,
                retention_days=settings.retention_days,
                max_size_mb=settings.max_spool_size_mb,
            )
        return cls(
            sink,
            queue_capacity=pipeline.queue_capacity,
            quiet_period_s=pipeline.debounce_ms / 1000.0,
            dedup_max_keys=pipeline.dedup_max_keys,
            retry_policy=RetryPolicy.from_ms(pipeline.retry_attempts, pipeline.retry_base_ms, pipeline.retry_max_ms),
            redactor=Redactor(settings.export_mode, settings.redact_patterns),
            trace_name_prefix=settings.trace_name_prefix,
            audit=audit,
            flush_interval_s=settings.langfuse.flush_interval_ms / 1000.0,
        )

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        if self.running:
            logger.debug("pipeline already running")
            return
        if self.audit is not None:
            self.audit.cleanup()
        self._consumer = asyncio.create_task(self.processor.run(self.queue), name="event-processor")
        if self.flush_interval_s > 0 and self.client.is_connected:
            self._flusher = asyncio.create_task(self._flush_loop(), name="periodic-flush")
        logger.info(
            "pipeline started",
            extra={"queue_capacity": self.queue.capacity, "sink_connected": self.client.is_connected},
        )

    async def offer(self, event: PluginEvent) -> bool:
        accepted = await self.queue.offer(event)
        if not accepted:
            logger.debug("queue closed, event not accepted", extra={"event_type": event.type})
        return accepted

    async def flush(self) -> None:
        try:
            await self.client.flush()
        except SinkApiError as err:
            logger.warning("flush failed", extra={"error": str(err)})

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            await self.flush()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop consuming and shut the sink down.

        With ``drain`` the events already in the queue are still processed and
        pending debounced events fire at once; without it both are discarded.
        """
        logger.info("pipeline stopping", extra={"drain": drain, "queued": self.queue.size})
        if self._flusher is not None:
            self._flusher.cancel()
            await asyncio.gather(self._flusher, return_exceptions=True)
            self._flusher = None

        if drain:
            await self.queue.close()
            if self._consumer is not None:
                await asyncio.gather(self._consumer, return_exceptions=True)
            fired = await self.processor.scheduler.flush_pending()
            if fired:
                logger.info("fired pending debounced events", extra={"count": fired})
        else:
            if self._consumer is not None:
                self._consumer.cancel()
                await asyncio.gather(self._consumer, return_exceptions=True)
            await self.queue.close()
            self.processor.scheduler.cancel_all()
        self._consumer = None
        await self.processor.scheduler.wait_idle()

        try:
            await self.client.shutdown()
        except SinkApiError as err:
            logger.error("sink shutdown failed", extra={"error": str(err)})
        logger.info("pipeline stopped")
