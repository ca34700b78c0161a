# ============================================================================
# SERVICE CACHE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Keyed factory cache
# PURPOSE: Reuse per-plan service objects with bounded LRU eviction
# CREATED: 17 OCT 2026
# ============================================================================
"""
Service Cache

Per-plan services (deployment managers, restore services) are built once
per plan id and reused. The cache is owned by whoever wires the
operators, bounded in size, and evicts the least recently used entry.
"""

import logging
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceCache(Generic[T]):
    """Bounded LRU cache of services keyed by plan id."""

    def __init__(self, max_size: int = 64):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, T]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get_or_create(self, key: Hashable, factory: Callable[[], T]) -> T:
        """Return the cached service for key, building it on a miss."""
        if key in self._entries:
            self._hits += 1
            self._entries.move_to_end(key)
            return self._entries[key]

        self._misses += 1
        service = factory()
        self._entries[key] = service
        if len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted service for {evicted}")
        return service

    def get(self, key: Hashable) -> Optional[T]:
        return self._entries.get(key)

    def evict(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    @property
    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
        }


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["ServiceCache"]
