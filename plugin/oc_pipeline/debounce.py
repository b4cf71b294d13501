"""Per-key debounce: the last event of a burst wins.

Each key holds at most one pending event and one timer task. A new arrival
swaps in a fresh entry and cancels the previous timer. When a timer expires
it only fires if its entry is still the current one for the key, and it
removes the entry before handing the event on, so a concurrent arrival starts
a new cycle instead of being lost, and no event is handed on twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from oc_shared.event_types import PluginEvent, event_key

logger = logging.getLogger(__name__)

FireHandler = Callable[[PluginEvent], Awaitable[object]]


@dataclass
class _Entry:
    event: PluginEvent
    timer: Optional["asyncio.Task[None]"] = None


class DebounceScheduler:
    def __init__(
        self,
        quiet_period_s: float,
        on_fire: FireHandler,
        *,
        key_fn: Callable[[PluginEvent], str] = event_key,
    ) -> None:
        self._quiet_period_s = quiet_period_s
        self._on_fire = on_fire
        self._key_fn = key_fn
        self._entries: Dict[str, _Entry] = {}
        self._firing: Set["asyncio.Task[None]"] = set()

    @property
    def quiet_period_s(self) -> float:
        return self._quiet_period_s

    @property
    def pending_count(self) -> int:
        return len(self._entries)

    def pending_keys(self) -> List[str]:
        return list(self._entries)

    def submit(self, event: PluginEvent) -> str:
        key = self._key_fn(event)
        entry = _Entry(event=event)
        previous = self._swap(key, entry)
        if previous is not None and previous.timer is not None:
            previous.timer.cancel()
        entry.timer = asyncio.create_task(self._fire_after(key, entry), name=f"debounce:{key}")
        return key

    def _swap(self, key: str, entry: _Entry) -> Optional[_Entry]:
        # No await between read and write: this is the atomic replace-and-fetch.
        previous = self._entries.get(key)
        self._entries[key] = entry
        return previous

    async def _fire_after(self, key: str, entry: _Entry) -> None:
        await asyncio.sleep(self._quiet_period_s)
        if self._entries.get(key) is not entry:
            return
        del self._entries[key]
        task = asyncio.current_task()
        if task is not None:
            self._firing.add(task)
        try:
            await self._dispatch(key, entry.event)
        finally:
            if task is not None:
                self._firing.discard(task)

    async def _dispatch(self, key: str, event: PluginEvent) -> None:
        try:
            await self._on_fire(event)
        except Exception:
            logger.exception("debounced handler failed", extra={"key": key, "event_type": event.type})

    async def flush_pending(self) -> int:
        """Fire every pending entry now instead of waiting out its quiet period."""
        entries = list(self._entries.items())
        self._entries.clear()
        for _key, entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
        for key, entry in entries:
            await self._dispatch(key, entry.event)
        return len(entries)

    def cancel_all(self) -> int:
        """Drop every pending entry without firing it."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
        if entries:
            logger.info("discarded pending debounced events", extra={"count": len(entries)})
        return len(entries)

    async def wait_idle(self) -> None:
        """Wait for handlers that already fired to finish."""
        while self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)
