"""In-memory TTL cache for validation results.

The cache knows nothing about feeds: callers choose keys and TTLs.  All access
goes through a single ``threading.Lock`` so concurrent writers to one key never
interleave; the last writer wins.  Values are deep-copied on the way in and on
the way out, so nobody can mutate a cached entry in place.

Usage::

    cache = ValidationCache(default_ttl=300)
    cache.set("validation:https://example.com/feed", result, ttl=1800)
    cached = cache.get("validation:https://example.com/feed")
"""

from __future__ import annotations

import copy
import fnmatch
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class ValidationCache:
    """Key -> value store with per-entry TTL, pattern invalidation and stats."""

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Any:
        """Return a copy of the cached value, or ``None`` on miss/expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self._hits += 1
            return copy.deepcopy(entry.value)

    def peek(self, key: str) -> Any:
        """Like ``get`` but leaves hit/miss statistics alone."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                return None
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        stored = copy.deepcopy(value)
        with self._lock:
            if key not in self._entries:
                self._ensure_capacity()
            self._entries[key] = CacheEntry(
                value=stored,
                stored_at=now,
                ttl=self.default_ttl if ttl is None else ttl,
                last_accessed=now,
            )

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching the glob *pattern*; return how many went."""
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cache entries matching %s", len(doomed), pattern)
        return len(doomed)

    def refresh(self, key: str) -> bool:
        """Mark *key* expired so the next read misses and the caller re-validates."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.ttl = -1.0
            return True

    def keys(self, pattern: Optional[str] = None) -> List[str]:
        now = self._clock()
        with self._lock:
            live = [k for k, e in self._entries.items() if not e.expired(now)]
        if pattern is None:
            return live
        return [k for k in live if fnmatch.fnmatchcase(k, pattern)]

    def cleanup(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            hits, misses, evictions = self._hits, self._misses, self._evictions
        lookups = hits + misses
        ages = [now - e.stored_at for e in entries]
        return {
            "entries": len(entries),
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / lookups, 2) if lookups else 0.0,
            "evictions": evictions,
            "oldest_entry_age": max(ages) if ages else 0.0,
            "newest_entry_age": min(ages) if ages else 0.0,
            "max_entries": self.max_entries,
        }

    def _ensure_capacity(self) -> None:
        # Caller holds the lock.
        while self._entries and len(self._entries) >= self.max_entries:
            victim = min(self._entries, key=lambda k: self._entries[k].last_accessed)
            del self._entries[victim]
            self._evictions += 1
