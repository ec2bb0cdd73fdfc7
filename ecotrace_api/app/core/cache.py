"""
In-process TTL cache.

``MemoryCache`` keeps values in an ``OrderedDict`` ordered by recency of
use.  Each entry carries its own expiry time; expired entries are
dropped lazily on access and in bulk by ``cleanup``.  When the cache is
full the least recently used entry is evicted.

The module-level ``cache`` instance is shared by the dashboard service
(per-user aggregates), the eGRID lookups and the Electricity Maps
client.  Keys are namespaced by convention, e.g. ``dashboard:{user_id}:carbon:weekly``.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from .config import settings

logger = logging.getLogger(__name__)


class MemoryCache:
    """Thread-safe TTL cache with LRU eviction."""

    def __init__(self, max_size: int = 1000, default_ttl: float = 300) -> None:
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._data: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str) -> Optional[Any]:
        now = time.monotonic()
        with self._lock:
            item = self._data.get(key)
            if item is None:
                self._stats["misses"] += 1
                return None
            expires_at, value = item
            if expires_at <= now:
                del self._data[key]
                self._stats["misses"] += 1
                return None
            self._data.move_to_end(key)
            self._stats["hits"] += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = time.monotonic() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            elif len(self._data) >= self.max_size:
                evicted, _ = self._data.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug("Cache full, evicted %s", evicted)
            self._data[key] = (expires_at, value)
            self._stats["sets"] += 1

    def has(self, key: str) -> bool:
        with self._lock:
            item = self._data.get(key)
            return item is not None and item[0] > time.monotonic()

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._stats["deletes"] += 1
                return True
            return False

    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix`` and return the count."""
        with self._lock:
            keys = [key for key in self._data if key.startswith(prefix)]
            for key in keys:
                del self._data[key]
            self._stats["deletes"] += len(keys)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def reset(self) -> None:
        """Clear all entries and statistics."""
        with self._lock:
            self._data.clear()
            for name in self._stats:
                self._stats[name] = 0

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        if expired:
            logger.debug("Cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._data),
                "max_size": self.max_size,
                "hit_rate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            }


cache = MemoryCache(settings.cache_max_size, settings.cache_default_ttl)
