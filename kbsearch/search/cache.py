"""In-memory caches for the expensive steps of a search.

`LRUCache` is a bounded mapping with an absolute per-entry TTL. `SearchCache`
keeps three of them (query embeddings, query expansions, oracle relevance
scores) behind hashed keys and owns the periodic sweep of expired entries.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from kbsearch.constants import (
    CACHE_CLEANUP_INTERVAL,
    CACHE_KEY_LENGTH,
    CACHE_MAX_ENTRIES,
    CACHE_TTL_SECONDS,
    RERANK_CACHE_FACTOR,
    SEARCH_CACHE_MAX_ENTRIES,
)
from kbsearch.logging import get_logger

if TYPE_CHECKING:
    from kbsearch.config import CachingConfig

_logger = get_logger(__name__)

V = TypeVar("V")

type Clock = Callable[[], float]


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    hit_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    size: int
    hit_rate: float


class LRUCache(Generic[V]):
    def __init__(
        self,
        max_entries: int = CACHE_MAX_ENTRIES,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        enabled: bool = True,
        clock: Clock = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._enabled = enabled
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, key: str) -> V | None:
        if not self._enabled:
            self._misses += 1
            return None

        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._expired(entry, self._clock()):
            del self._entries[key]
            self._misses += 1
            return None

        entry.hit_count += 1
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        if not self._enabled:
            return

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

        self._entries[key] = CacheEntry(value=value, created_at=self._clock())

    def has(self, key: str) -> bool:
        if not self._enabled:
            return False

        entry = self._entries.get(key)
        if entry is None:
            return False

        if self._expired(entry, self._clock()):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get_stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            size=len(self._entries),
            hit_rate=self._hits / lookups if lookups else 0.0,
        )

    def set_enabled(self, enabled: bool) -> None:
        """Disabling drops every entry, it is not a pause."""
        self._enabled = enabled
        if not enabled:
            self.clear()

    def cleanup(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()[:CACHE_KEY_LENGTH]


def stable_hash(*parts: str) -> str:
    """Deterministic across processes, unlike hash(). Parts are JSON-encoded so they never run together."""
    return _digest(json.dumps(parts))


class SearchCache:
    def __init__(
        self,
        max_entries: int = SEARCH_CACHE_MAX_ENTRIES,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        enabled: bool = True,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL,
        clock: Clock = time.monotonic,
    ):
        self.cleanup_interval = cleanup_interval
        self.embeddings: LRUCache[list[float]] = LRUCache(max_entries, ttl_seconds, enabled, clock)
        self.expansions: LRUCache[list[str]] = LRUCache(max_entries, ttl_seconds, enabled, clock)
        # one entry per (query, document), so these pile up faster
        self.rerank_scores: LRUCache[float] = LRUCache(
            max_entries * RERANK_CACHE_FACTOR, ttl_seconds, enabled, clock
        )
        self._enabled = enabled
        self._disposed = False
        self._cleanup_task: asyncio.Task | None = None
        if enabled:
            self._start_cleanup()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def _caches(self) -> dict[str, LRUCache]:
        return {
            "embedding": self.embeddings,
            "expansion": self.expansions,
            "reranker": self.rerank_scores,
        }

    # --- Embeddings ---

    def get_embedding(self, query: str, model: str) -> list[float] | None:
        self._start_cleanup()
        return self.embeddings.get(stable_hash("emb", model, query))

    def set_embedding(self, query: str, model: str, embedding: list[float]) -> None:
        self._start_cleanup()
        self.embeddings.set(stable_hash("emb", model, query), embedding)

    # --- Query expansions ---

    def get_expansion(self, query: str, method: str) -> list[str] | None:
        self._start_cleanup()
        return self.expansions.get(stable_hash("exp", method, query))

    def set_expansion(self, query: str, method: str, expansions: list[str]) -> None:
        self._start_cleanup()
        self.expansions.set(stable_hash("exp", method, query), list(expansions))

    # --- Oracle relevance scores ---

    def get_rerank_score(self, query: str, document_hash: str) -> float | None:
        self._start_cleanup()
        return self.rerank_scores.get(stable_hash("rer", query, document_hash))

    def set_rerank_score(self, query: str, document_hash: str, score: float) -> None:
        self._start_cleanup()
        self.rerank_scores.set(stable_hash("rer", query, document_hash), score)

    @staticmethod
    def hash_document(content: str) -> str:
        return _digest(content)

    # --- Management ---

    def get_stats(self) -> dict[str, CacheStats]:
        return {name: cache.get_stats() for name, cache in self._caches().items()}

    def clear(self) -> None:
        for cache in self._caches().values():
            cache.clear()
        _logger.debug("search cache cleared")

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        for cache in self._caches().values():
            cache.set_enabled(enabled)
        if enabled:
            self._start_cleanup()
        else:
            self._stop_cleanup()

    def cleanup(self) -> dict[str, int]:
        removed = {name: cache.cleanup() for name, cache in self._caches().items()}
        if any(removed.values()):
            _logger.debug("search cache cleanup", **removed)
        return removed

    def _start_cleanup(self) -> None:
        # The sweep needs an event loop; outside one it starts on the first async use.
        if self._disposed or not self._enabled or self.cleanup_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    def _stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def dispose(self) -> None:
        """Stop the sweep for good; the caches stay usable but are no longer swept."""
        self._disposed = True
        self._stop_cleanup()
        self.clear()


def create_search_cache(config: "CachingConfig | None" = None, clock: Clock = time.monotonic) -> SearchCache:
    if config is None:
        return SearchCache(clock=clock)
    return SearchCache(
        max_entries=config.max_entries,
        ttl_seconds=config.ttl_seconds,
        enabled=config.enabled,
        clock=clock,
    )
