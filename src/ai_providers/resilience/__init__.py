"""Provider resilience primitives.

Circuit breaking, token-bucket rate limiting, LRU+TTL response caching,
classification-driven retries and cost tracking.  Each primitive owns its
own lock; none holds a lock across an ``await``.
"""

from ai_providers.resilience.cache import (
    ResponseCache,
    generate_key,
    generate_user_isolated_key,
)
from ai_providers.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)
from ai_providers.resilience.cost_tracker import CostTracker, ModelPricing
from ai_providers.resilience.rate_limiter import BucketConfig, RateLimiter
from ai_providers.resilience.retry import (
    RetryExecutor,
    RetryOptions,
    compute_delay,
    is_retryable,
    with_retry,
)

__all__ = [
    "BucketConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStatus",
    "CostTracker",
    "ModelPricing",
    "RateLimiter",
    "ResponseCache",
    "RetryExecutor",
    "RetryOptions",
    "compute_delay",
    "generate_key",
    "generate_user_isolated_key",
    "is_retryable",
    "with_retry",
]
