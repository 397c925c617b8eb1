"""Rate limiter: per-provider token buckets.

Each bucket refills continuously up to its limit.  Refill is computed
lazily on every acquire/status call, so there is no background task.  A
server-reported ``Retry-After`` empties the bucket and pushes its refill
start into the future: the cooldown cannot be shortened by a refill tick.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

import structlog

from ai_providers.types import ProviderType, RateLimitStatus, provider_key

logger = structlog.get_logger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60.0


@dataclass(frozen=True)
class BucketConfig:
    """Bucket capacity and refill rate (tokens per second)."""

    limit: int
    refill_per_second: float

    @classmethod
    def per_minute(cls, requests_per_minute: int) -> BucketConfig:
        return cls(limit=requests_per_minute, refill_per_second=requests_per_minute / 60.0)


DEFAULT_BUCKETS: dict[str, BucketConfig] = {
    ProviderType.CLAUDE.value: BucketConfig.per_minute(50),
    ProviderType.GEMINI.value: BucketConfig.per_minute(60),
    ProviderType.LEONARDO.value: BucketConfig.per_minute(10),
}


class _TokenBucket:
    def __init__(self, config: BucketConfig, now: float) -> None:
        self.config = config
        self.tokens = float(config.limit)
        # May lie in the future while a server cooldown is in force
        self.refill_from = now

    def refill(self, now: float) -> None:
        elapsed = now - self.refill_from
        if elapsed <= 0:
            return
        self.tokens = min(
            float(self.config.limit),
            self.tokens + elapsed * self.config.refill_per_second,
        )
        self.refill_from = now

    def full_at(self) -> float:
        missing = self.config.limit - self.tokens
        if missing <= 0 or self.config.refill_per_second <= 0:
            return self.refill_from
        return self.refill_from + missing / self.config.refill_per_second


class RateLimiter:
    """Token-bucket admission control, one bucket per provider."""

    def __init__(
        self,
        buckets: Mapping[str, BucketConfig] | None = None,
        *,
        default_bucket: BucketConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._configs = {provider_key(k): v for k, v in (buckets or DEFAULT_BUCKETS).items()}
        self._default = default_bucket or BucketConfig.per_minute(60)
        self._clock = clock
        self._buckets: dict[str, _TokenBucket] = {}
        self._lock = threading.Lock()

    def try_acquire(self, provider: ProviderType | str) -> bool:
        """Consume one token if available; never blocks."""
        key = provider_key(provider)
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, now)
            bucket.refill(now)
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            logger.debug(
                "rate_limit_exhausted",
                provider=key,
                limit=bucket.config.limit,
                reset_at=bucket.full_at(),
            )
            return False

    def get_status(self, provider: ProviderType | str) -> RateLimitStatus:
        key = provider_key(provider)
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, now)
            bucket.refill(now)
            remaining = max(0, math.floor(bucket.tokens))
            return RateLimitStatus(
                remaining=remaining,
                limit=bucket.config.limit,
                reset_at=bucket.full_at(),
                is_limited=remaining <= 0,
            )

    def handle_rate_limit_response(
        self,
        provider: ProviderType | str,
        retry_after_seconds: float | None = None,
    ) -> None:
        """Fold a server-reported cooldown (e.g. HTTP 429 Retry-After) into the bucket."""
        key = provider_key(provider)
        cooldown = retry_after_seconds if retry_after_seconds is not None else DEFAULT_COOLDOWN_SECONDS
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, now)
            bucket.refill(now)
            bucket.tokens = 0.0
            bucket.refill_from = max(bucket.refill_from, now + max(0.0, cooldown))
        logger.warning(
            "rate_limit_server_cooldown",
            provider=key,
            retry_after_s=cooldown,
        )

    def reset(self, provider: ProviderType | str | None = None) -> None:
        with self._lock:
            if provider is None:
                self._buckets.clear()
            else:
                self._buckets.pop(provider_key(provider), None)

    # ── Internals ────────────────────────────────────────────
    def _bucket(self, key: str, now: float) -> _TokenBucket:
        """Caller must hold lock."""
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _TokenBucket(self._configs.get(key, self._default), now)
            self._buckets[key] = bucket
        return bucket
