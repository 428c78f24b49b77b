"""
Price recommendation cache.

Memoizes recommendation results by normalized prompt key so that identical
prompts reach the external recommender at most once.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from subscription_lifecycle.storage.models import RecommendationCacheEntry


class PriceRecommendationCache:
    """Thread-safe in-memory map from prompt key to recommendation entry.

    Entries are immutable; writing an existing key replaces the entry (last
    write wins). With no bounds configured an entry lives for the rest of
    the process. ``max_entries`` evicts the least recently used key and
    ``ttl_seconds`` makes older entries read as absent.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")

        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def get(self, key: str) -> Optional[RecommendationCacheEntry]:
        """Return the entry for a key, or None if absent or expired."""
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            stored_at, entry = item
            if self.ttl_seconds is not None and self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def put(self, key: str, entry: RecommendationCacheEntry) -> None:
        """Store an entry, evicting the least recently used key if full."""
        with self._lock:
            self._entries[key] = (self._clock(), entry)
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
