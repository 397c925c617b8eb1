"""Resilience context: the shared state every adapter and the orchestrator use.

``create_context`` builds an isolated set of primitives (tests use it with a
fake clock).  ``get_default_context`` lazily wires one process-wide set from
settings; there is no teardown beyond process exit.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from ai_providers.config import Settings, get_settings
from ai_providers.resilience.cache import ResponseCache
from ai_providers.resilience.circuit_breaker import CircuitBreakerRegistry
from ai_providers.resilience.cost_tracker import CostTracker
from ai_providers.resilience.rate_limiter import BucketConfig, RateLimiter
from ai_providers.resilience.retry import RetryExecutor, RetryOptions
from ai_providers.types import ProviderType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResilienceContext:
    cache: ResponseCache[Any]
    rate_limiter: RateLimiter
    circuit_breakers: CircuitBreakerRegistry
    cost_tracker: CostTracker
    retry: RetryExecutor
    clock: Callable[[], float] = time.time


def create_context(
    settings: Settings | None = None,
    *,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ResilienceContext:
    """Build a fresh, non-shared context."""
    s = settings or get_settings()
    return ResilienceContext(
        cache=ResponseCache(
            max_size=s.cache_max_size,
            default_ttl_seconds=s.cache_ttl_seconds,
            clock=clock,
        ),
        rate_limiter=RateLimiter(
            {
                ProviderType.CLAUDE: BucketConfig.per_minute(s.claude_rpm),
                ProviderType.GEMINI: BucketConfig.per_minute(s.gemini_rpm),
                ProviderType.LEONARDO: BucketConfig.per_minute(s.leonardo_rpm),
            },
            clock=clock,
        ),
        circuit_breakers=CircuitBreakerRegistry(
            failure_threshold=s.circuit_breaker_failure_threshold,
            cooldown_seconds=s.circuit_breaker_cooldown_seconds,
            failure_window_seconds=s.circuit_breaker_failure_window_seconds,
            clock=clock,
        ),
        cost_tracker=CostTracker(clock=clock),
        retry=RetryExecutor(
            RetryOptions(
                max_retries=s.retry_max_retries,
                initial_delay_ms=s.retry_initial_delay_ms,
                max_delay_ms=s.retry_max_delay_ms,
                backoff_multiplier=s.retry_backoff_multiplier,
            ),
            sleep=sleep,
        ),
        clock=clock,
    )


# ── Process-wide singleton ───────────────────────────────────
_default_context: ResilienceContext | None = None
_init_lock = threading.Lock()


def get_default_context(settings: Settings | None = None) -> ResilienceContext:
    global _default_context
    if _default_context is None:
        with _init_lock:
            if _default_context is None:
                _default_context = create_context(settings)
                logger.info("resilience_context_initialized")
                return _default_context
    if settings is not None:
        logger.warning("resilience_context_settings_ignored", reason="already_initialized")
    return _default_context


def reset_default_context() -> None:
    """Drop the process-wide context so the next access rebuilds it."""
    global _default_context
    with _init_lock:
        _default_context = None
