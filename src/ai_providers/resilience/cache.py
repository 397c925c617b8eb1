"""In-process response cache with per-entry TTL and LRU eviction.

Insertion order of the underlying ``OrderedDict`` is the recency order: a
hit moves the entry to the most-recently-used end, and a ``set`` at
capacity evicts from the other end.  Expired entries are purged lazily on
``get``/``has`` and in bulk by ``clear_expired``.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Mapping, TypeVar
from urllib.parse import quote

import structlog

from ai_providers.observability.metrics import CACHE_OPERATIONS
from ai_providers.types import CacheEntry, CacheStats, ProviderType, provider_key

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE = 500
DEFAULT_TTL_SECONDS = 300.0


def generate_key(params: Mapping[str, Any]) -> str:
    """Deterministic key over named parameters.

    Keys are sorted and ``None`` values dropped, so an omitted parameter and
    one passed as ``None`` produce the same key.
    """
    filtered = {k: params[k] for k in sorted(params) if params[k] is not None}
    return json.dumps(filtered, sort_keys=True, separators=(",", ":"), default=str)


def generate_user_isolated_key(
    provider: ProviderType | str,
    model: str,
    user_id: str | None,
    params: Mapping[str, Any],
) -> str:
    """Key of the form ``provider:model:<user>:<content hash>``.

    Anonymous callers and every distinct user id land in disjoint key spaces.
    """
    content_hash = hashlib.sha256(generate_key(params).encode("utf-8")).hexdigest()
    owner = "anonymous" if user_id is None else f"user={quote(str(user_id), safe='')}"
    return f"{provider_key(provider)}:{model}:{owner}:{content_hash}"


class ResponseCache(Generic[T]):
    """Thread-safe LRU + TTL cache."""

    def __init__(
        self,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    generate_key = staticmethod(generate_key)
    generate_user_isolated_key = staticmethod(generate_user_isolated_key)

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                CACHE_OPERATIONS.labels(result="miss").inc()
                return None

            if self._clock() > entry.expires_at:
                del self._entries[key]
                self._misses += 1
                CACHE_OPERATIONS.labels(result="miss").inc()
                return None

            entry.hits += 1
            self._entries.move_to_end(key)
            self._hits += 1
            CACHE_OPERATIONS.labels(result="hit").inc()
            return entry.value

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max_size:
                evicted, _ = self._entries.popitem(last=False)
                CACHE_OPERATIONS.labels(result="evicted").inc()
                logger.debug("cache_evicted", key=evicted, max_size=self._max_size)
            self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + ttl)

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._clock() > entry.expires_at:
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear_expired(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now > e.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("cache_expired_cleared", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                max_size=self._max_size,
            )

    def get_hit_rate(self) -> float:
        """Hit rate as a percentage of all lookups."""
        with self._lock:
            total = self._hits + self._misses
            return (self._hits / total) * 100 if total else 0.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
