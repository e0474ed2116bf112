"""
In-memory LRU + TTL cache for AI generation results.

Only resolved values are stored; coroutines and futures are refused, since a
cached awaitable cannot be awaited a second time.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

logger = logging.getLogger("generation_cache")
logger.setLevel(logging.DEBUG)

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL = 30 * 60  # seconds

CacheKey = Union[str, Dict[str, Any]]


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    accessed_at: float
    ttl: float
    size: int


class GenerationCache:
    """
    Bounded cache keyed by string or dict.

    Parameters
    ----------
    max_size : int
        Entry capacity; the least recently accessed entry is evicted first.
    default_ttl : float
        Seconds an entry lives unless ``set`` is given an explicit ttl.
    clock : callable, optional
        Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @staticmethod
    def normalize_key(key: CacheKey) -> str:
        if isinstance(key, str):
            return key
        return json.dumps(key, sort_keys=True, default=str)

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > entry.ttl

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return the cached value, or None on a miss or expiry."""
        k = self.normalize_key(key)
        entry = self._entries.get(k)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry):
            del self._entries[k]
            self.misses += 1
            return None
        entry.accessed_at = self._clock()
        self.hits += 1
        return entry.value

    def set(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> None:
        k = self.normalize_key(key)
        if inspect.isawaitable(value):
            logger.warning("Refusing to cache an awaitable for key %s", k[:60])
            return

        if len(self._entries) >= self.max_size and k not in self._entries:
            self._evict_lru()

        if isinstance(value, str):
            size = len(value)
        else:
            try:
                size = len(json.dumps(value, default=str))
            except (TypeError, ValueError):
                size = 0

        now = self._clock()
        self._entries[k] = CacheEntry(
            value=value,
            created_at=now,
            accessed_at=now,
            ttl=self.default_ttl if ttl is None else ttl,
            size=size,
        )

    def has(self, key: CacheKey) -> bool:
        k = self.normalize_key(key)
        entry = self._entries.get(k)
        if entry is None:
            return False
        if self._expired(entry):
            del self._entries[k]
            return False
        return True

    def delete(self, key: CacheKey) -> bool:
        return self._entries.pop(self.normalize_key(key), None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries, key=lambda k: self._entries[k].accessed_at)
        del self._entries[oldest]
        self.evictions += 1

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hit_rate": self.hits / total if total else 0.0,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def memory_usage(self) -> int:
        """Estimated total size of cached values, in characters."""
        return sum(e.size for e in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


generation_cache = GenerationCache()
