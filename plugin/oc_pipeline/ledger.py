from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Optional

logger = logging.getLogger(__name__)


class ProcessedKeys:
    """Process-lifetime set of keys that already produced output.

    Methods never await, so ``add`` is an atomic test-and-set for every
    coroutine on the loop. With ``max_keys`` set, the oldest keys are evicted
    once the ledger grows past it; evicted keys can be processed again.
    """

    def __init__(self, max_keys: Optional[int] = None) -> None:
        if max_keys is not None and max_keys < 1:
            raise ValueError(f"max_keys must be >= 1, got {max_keys}")
        self._max_keys = max_keys
        self._keys: "OrderedDict[str, None]" = OrderedDict()

    def add(self, key: str) -> bool:
        """Mark ``key`` processed. Returns False if it already was."""
        if key in self._keys:
            return False
        self._keys[key] = None
        if self._max_keys is not None:
            while len(self._keys) > self._max_keys:
                evicted, _ = self._keys.popitem(last=False)
                logger.debug("evicted processed key", extra={"key": evicted})
        return True

    def has(self, key: str) -> bool:
        return key in self._keys

    def remove(self, key: str) -> bool:
        if key not in self._keys:
            return False
        del self._keys[key]
        return True

    def clear(self) -> None:
        self._keys.clear()

    @property
    def size(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)
