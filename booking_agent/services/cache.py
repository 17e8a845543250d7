"""Thread-safe in-memory cache with per-entry TTL and LRU eviction.

Used by the NexHealth client for data that changes rarely within a call
(the practice's appointment types).  Availability is never cached: slots
change in real time and a stale slot list is how double bookings happen.

• **OrderedDict** keeps recency order for O(1) promotion and eviction.
• Entries expire ``ttl_seconds`` after they are written; an expired entry
  is dropped lazily on the next read.
• The cache is bounded by entry count, not byte size; cached values are
  short lists of plain dicts.

>>> cache = TTLCache(max_entries=256, ttl_seconds=300)
>>> cache.put("appointment_types:royal-oak:4021", [{"id": 11, "name": "Cleaning"}])
>>> cache.get("appointment_types:royal-oak:4021")
[{'id': 11, 'name': 'Cleaning'}]
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 256
DEFAULT_TTL_SECONDS = 300.0


class TTLCache:
    """Least-recently-used cache whose entries also expire after a fixed TTL."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        # key → (value, expires_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the live value (promoting it to MRU) or ``None``."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                logger.debug("Cache: expired %s", key)
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*, evicting the LRU entry when full."""
        with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s", evicted_key)
            self._store[key] = (value, self._clock() + self._ttl)

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key that starts with *prefix*.  Returns count removed."""
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for key in keys:
                del self._store[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @property
    def entry_count(self) -> int:
        """Number of entries stored, including ones not yet lazily expired."""
        return len(self._store)
