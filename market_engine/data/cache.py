"""In-memory TTL cache with least-recently-used eviction for market snapshots."""

from __future__ import annotations

import asyncio
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from market_engine.core.constants import (
    CHAIN_KEY_PREFIX,
    DEFAULT_CACHE_MAX_SIZE,
    DEFAULT_CACHE_SWEEP_SECONDS,
    DEFAULT_CACHE_TTL_SECONDS,
    QUOTE_KEY_PREFIX,
)


def quote_key(symbol: str) -> str:
    return f"{QUOTE_KEY_PREFIX}{symbol.upper()}"


def chain_key(underlying: str) -> str:
    return f"{CHAIN_KEY_PREFIX}{underlying.upper()}"


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    written_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.written_at > self.ttl


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time counters for cache diagnostics."""

    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class FreshnessCache:
    """Key/value store whose entries expire after a per-entry TTL.

    When full, inserting a new key evicts the least recently accessed entry.
    Reads and writes both refresh access order. Expired entries are dropped
    lazily on read and by an optional background sweep task.
    """

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        sweep_interval: float = DEFAULT_CACHE_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task[None] | None = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def __len__(self) -> int:
        return len(self._entries)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ValueError("ttl must be positive")
        with self._lock:
            self._store(key, value, effective_ttl)

    def set_many(self, items: Mapping[str, Any], ttl: float | None = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ValueError("ttl must be positive")
        with self._lock:
            for key, value in items.items():
                self._store(key, value, effective_ttl)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return default
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return fresh values for ``keys``; absent or expired keys are omitted."""
        sentinel = object()
        found: dict[str, Any] = {}
        for key in keys:
            value = self.get(key, sentinel)
            if value is not sentinel:
                found[key] = value
        return found

    def has(self, key: str) -> bool:
        """Return True when ``key`` holds a fresh value. Does not touch access order."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expirations += 1
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def invalidate_by_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated {} cache entries with prefix {!r}", len(doomed), prefix)
        return len(doomed)

    def invalidate_by_pattern(self, pattern: str | re.Pattern[str]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            doomed = [key for key in self._entries if regex.search(key)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated {} cache entries matching {!r}", len(doomed), regex.pattern)
        return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in doomed:
                del self._entries[key]
            self._expirations += len(doomed)
        return len(doomed)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_size=self._max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("Cache sweep removed {} expired entries", removed)

    def _store(self, key: str, value: Any, ttl: float) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Cache full; evicted least recently used key {}", evicted)
        self._entries[key] = _CacheEntry(value=value, written_at=self._clock(), ttl=ttl)
