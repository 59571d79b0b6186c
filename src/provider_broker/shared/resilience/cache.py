"""In-process TTL cache for results of repeatable reads.

Only successful results of read-only actions are stored.  Keys are a hash of
the canonical (sorted-keys) JSON of capability, action, input and
``priority_hint``.  Calls naming a preferred provider never touch the cache.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

import orjson

from provider_broker.domain.entities import OperationResult

Clock = Callable[[], float]


def make_cache_key(
    capability: str,
    action: str,
    payload: dict[str, Any],
    priority_hint: int | None = None,
) -> str:
    raw = orjson.dumps(
        {"capability": capability, "action": action, "input": payload, "priority_hint": priority_hint},
        option=orjson.OPT_SORT_KEYS,
        default=str,
    )
    return hashlib.sha256(raw).hexdigest()


class ResultCache:
    """Bounded LRU with per-entry expiry; ``ttl_seconds <= 0`` disables it."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Clock = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, OperationResult]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl > 0 and self._max > 0

    def get(self, key: str) -> OperationResult | None:
        if not self.enabled:
            return None
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, result = item
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return result

    def set(self, key: str, result: OperationResult) -> None:
        if not self.enabled or not result.success:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self._ttl, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max:
                self._entries.popitem(last=False)

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
