"""Bounded, TTL-evicted cache of routing results."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterable

from cachetools import TTLCache

from context_router.types import MemoryLayer, QueryType, RoutingResult

logger = logging.getLogger(__name__)

CacheKey = tuple[str, QueryType, frozenset[MemoryLayer]]

_PUNCTUATION_TAIL = re.compile(r"[\s?!.,;:]+$")


def normalize_query(query: str) -> str:
    """Case- and whitespace-insensitive form of a query used as cache key."""
    collapsed = " ".join(query.lower().split())
    return _PUNCTUATION_TAIL.sub("", collapsed)


class RoutingCache:
    """Routing results keyed by (normalized query, type, selected layers).

    Entries expire `ttl_seconds` after insertion and the least recently used
    entry is evicted once `max_size` is reached. Pass `timer` to drive expiry
    from a fake clock in tests.
    """

    def __init__(
        self,
        *,
        max_size: int = 256,
        ttl_seconds: float = 300.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TTLCache[CacheKey, RoutingResult] = TTLCache(
            maxsize=max_size, ttl=ttl_seconds, timer=timer
        )
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(
        query: str, query_type: QueryType, layers: Iterable[MemoryLayer] = ()
    ) -> CacheKey:
        return (normalize_query(query), query_type, frozenset(layers))

    def get(
        self, query: str, query_type: QueryType, layers: Iterable[MemoryLayer] = ()
    ) -> RoutingResult | None:
        with self._lock:
            result = self._entries.get(self.key(query, query_type, layers))
            if result is None:
                self.misses += 1
            else:
                self.hits += 1
            return result

    def put_if_absent(
        self,
        query: str,
        query_type: QueryType,
        result: RoutingResult,
        layers: Iterable[MemoryLayer] = (),
    ) -> RoutingResult:
        """Store `result` unless a live entry exists; return the stored entry."""
        key = self.key(query, query_type, layers)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            self._entries[key] = result
            logger.debug("Cached routing result for %r (%s)", key[0], query_type.value)
            return result

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[CacheKey]:
        with self._lock:
            self._entries.expire()
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"size": len(self), "hits": self.hits, "misses": self.misses}
