"""
TTL Cache - bounded in-process map with per-entry expiry

Used by the on-chain reconciler for verification results and block
timestamps. A performance optimization only: every caller must behave
correctly with an empty cache (cold start, restart, other instances).

DESIGN:
- Expiry checked on read (no background sweeper)
- Per-entry TTL so one cache can hold results with different lifetimes
- Bounded: oldest entries are evicted first when full
"""

import time
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float]  # None = never expires

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class TTLCache:
    """Bounded map with explicit expiry checks on read"""

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None):
        """Store a value; ttl=None keeps it until evicted"""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_entries:
            self._evict()

        expires_at = None if ttl is None else self._clock() + ttl
        self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def _evict(self):
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        # Still full: drop insertion-order oldest
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
            self._stats["evictions"] += 1

    def invalidate(self, key: Hashable):
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": f"{self._stats['hits'] / max(1, total):.1%}",
            "entries": len(self._entries),
            "max_entries": self._max_entries,
        }

    def clear(self):
        self._entries.clear()
        logger.info("Cache cleared")
