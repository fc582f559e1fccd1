"""Response cache for AI answers.

Answers are memoized per selection fingerprint so re-asking about the same
range inside the TTL window skips the provider entirely.

The fingerprint is deliberately coarse: it covers the line range and the
first characters of the selected text, but not the question, the provider
settings or the rest of the document. Eviction is FIFO by insertion order;
lookups never refresh an entry's position.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from .ai_types import QueryResult, Selection

__all__ = [
    "CacheEntry",
    "ResponseCache",
    "ResponseCacheConfig",
    "ResponseCacheStats",
    "make_cache_key",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 50
DEFAULT_KEY_PREFIX_CHARS = 100


def make_cache_key(selection: Selection, *, prefix_chars: int = DEFAULT_KEY_PREFIX_CHARS) -> str:
    """Derive the cache fingerprint for ``selection``.

    Args:
        selection: The selection being asked about.
        prefix_chars: How many leading characters of the selection text
            participate in the key.

    Returns:
        ``"{start_line}-{end_line}-{text prefix}"``.
    """
    return f"{selection.start_line}-{selection.end_line}-{selection.text[:prefix_chars]}"


@dataclass(slots=True, frozen=True)
class ResponseCacheConfig:
    """Configuration for the response cache.

    Attributes:
        max_entries: Capacity; inserting beyond it evicts the oldest entry.
        ttl_seconds: Entries older than this are treated as absent.
        key_prefix_chars: Selection text prefix length used in cache keys.
    """

    max_entries: int = DEFAULT_MAX_ENTRIES
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    key_prefix_chars: int = DEFAULT_KEY_PREFIX_CHARS


@dataclass(slots=True)
class CacheEntry:
    """A cached successful result with the time it was stored."""

    key: str
    result: QueryResult
    stored_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.stored_at >= ttl_seconds


@dataclass(slots=True)
class ResponseCacheStats:
    """Counters for cache operations."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    rejected: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejected": self.rejected,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
        }


class ResponseCache:
    """Time- and size-bounded memo of successful AI results.

    Example:
        >>> cache = ResponseCache()
        >>> key = cache.make_key(selection)
        >>> cache.put(key, result)
        >>> cache.get(key) is result
        True
    """

    def __init__(
        self,
        config: ResponseCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ResponseCacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._stats = ResponseCacheStats()

    @property
    def config(self) -> ResponseCacheConfig:
        return self._config

    @property
    def stats(self) -> ResponseCacheStats:
        return self._stats

    def make_key(self, selection: Selection) -> str:
        return make_cache_key(selection, prefix_chars=self._config.key_prefix_chars)

    def get(self, key: str) -> QueryResult | None:
        """Return the cached result for ``key`` or ``None`` when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock(), self._config.ttl_seconds):
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                LOGGER.debug("Cache entry expired for key %s", _short(key))
                return None

            self._stats.hits += 1
            return entry.result

    def put(self, key: str, result: QueryResult) -> None:
        """Store a successful result; failed results are refused.

        Re-storing an existing key refreshes its value and timestamp but keeps
        its original insertion position.
        """
        with self._lock:
            if not result.success:
                self._stats.rejected += 1
                LOGGER.debug("Refusing to cache failed result for key %s", _short(key))
                return
            self._entries[key] = CacheEntry(key=key, result=result, stored_at=self._clock())
            while len(self._entries) > self._config.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                LOGGER.debug("Evicted cache entry for key %s", _short(evicted_key))

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _short(key: str) -> str:
    return key if len(key) <= 24 else f"{key[:24]}…"
