"""
In-memory query result cache.

Results of backend reads are stored under keys such as ``books:<filters>`` or
``borrows:user:<id>`` and dropped by key prefix once a mutation succeeds.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from library_app.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Thread-safe TTL cache with prefix invalidation."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'invalidations': 0,
        }

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if datetime.now() < expires_at:
                    self.cache_stats['hits'] += 1
                    return value
                del self.memory_cache[key]
            self.cache_stats['misses'] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value for ``ttl_seconds`` (defaults to CACHE_TTL)."""
        ttl = settings.cache_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return False
        with self.memory_cache_lock:
            expires_at = datetime.now() + timedelta(seconds=ttl)
            self.memory_cache[key] = (value, expires_at)

            # Keep the cache bounded: drop the 10% closest to expiry
            if len(self.memory_cache) > self.max_entries:
                sorted_items = sorted(
                    self.memory_cache.items(),
                    key=lambda x: x[1][1]
                )
                for k, _ in sorted_items[:max(1, self.max_entries // 10)]:
                    self.memory_cache.pop(k, None)
        return True

    def delete(self, key: str) -> bool:
        with self.memory_cache_lock:
            return self.memory_cache.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key starting with ``pattern`` (a trailing ``*`` is ignored)."""
        prefix = pattern.replace('*', '')
        with self.memory_cache_lock:
            keys_to_remove = [key for key in self.memory_cache if key.startswith(prefix)]
            for key in keys_to_remove:
                self.memory_cache.pop(key, None)
            self.cache_stats['invalidations'] += len(keys_to_remove)
        if keys_to_remove:
            logger.debug("Invalidated %d cache entries for %s", len(keys_to_remove), pattern)
        return len(keys_to_remove)

    def clear(self) -> None:
        with self.memory_cache_lock:
            self.memory_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters plus the current size."""
        with self.memory_cache_lock:
            stats = self.cache_stats.copy()
            stats['memory_cache_size'] = len(self.memory_cache)

        if stats['hits'] + stats['misses'] > 0:
            stats['hit_ratio'] = stats['hits'] / (stats['hits'] + stats['misses'])
        else:
            stats['hit_ratio'] = 0.0

        return stats


cache_manager = CacheManager()
