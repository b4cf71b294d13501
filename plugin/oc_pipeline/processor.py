from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from oc_shared.event_types import (
    CHAT_PARAMS,
    MESSAGE_UPDATED,
    SESSION_TYPES,
    PluginEvent,
    dedup_key,
    event_key,
)

from .debounce import DebounceScheduler
from .ledger import ProcessedKeys
from .queue import BoundedEventQueue

logger = logging.getLogger(__name__)

EventHandler = Callable[[PluginEvent], Awaitable[None]]

# State-establishing kinds: later part events depend on them, so they skip the
# debounce delay.
IMMEDIATE_TYPES = frozenset(SESSION_TYPES + (MESSAGE_UPDATED, CHAT_PARAMS))

DEFAULT_QUIET_PERIOD_S = 10.0


def is_immediate(event: PluginEvent) -> bool:
    return event.type in IMMEDIATE_TYPES


class EventProcessor:
    """Routes events to the immediate path or the debounce path.

    Both paths end in :meth:`process`, which runs the dedup gate and then the
    handler (normally ``EventMapper.handle``).
    """

    def __init__(
        self,
        handler: EventHandler,
        *,
        ledger: ProcessedKeys,
        quiet_period_s: float = DEFAULT_QUIET_PERIOD_S,
    ) -> None:
        self._handler = handler
        self.ledger = ledger
        self.scheduler = DebounceScheduler(quiet_period_s, self.process)

    async def handle_incoming(self, event: PluginEvent) -> None:
        logger.debug("event received", extra={"event_type": event.type, "key": event_key(event)})
        if is_immediate(event):
            await self.process(event)
        else:
            self.scheduler.submit(event)

    async def process(self, event: PluginEvent) -> bool:
        """Map ``event`` unless its key was already processed. Returns whether it ran."""
        key = dedup_key(event)
        if not self.ledger.add(key):
            logger.debug("event already processed, skipping", extra={"key": key})
            return False
        logger.debug("processing event", extra={"event_type": event.type, "session_id": event.session_id})
        try:
            await self._handler(event)
        except Exception:
            logger.exception("handler failed", extra={"event_type": event.type, "key": key})
        return True

    async def run(self, queue: BoundedEventQueue[PluginEvent]) -> None:
        """Consume ``queue`` until it is closed or the task is cancelled."""
        logger.info("event processor started")
        try:
            async for event in queue:
                try:
                    await self.handle_incoming(event)
                except Exception:
                    logger.exception("error handling incoming event", extra={"event_type": event.type})
        except asyncio.CancelledError:
            logger.info("event processor cancelled")
            raise
        logger.info("event processor stopped")
