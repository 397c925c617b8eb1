"""Retry executor: classification-driven retries with exponential backoff.

Retry eligibility looks only at ``AIError`` fields (``retryable``, ``code``,
``status_code``); anything else propagates on first occurrence.  A
server-specified ``retry_after_ms`` wins over the computed backoff.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ai_providers.errors import AIError, AIErrorCode
from ai_providers.types import ProviderType, provider_key

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_CODES = frozenset(
    {AIErrorCode.RATE_LIMITED, AIErrorCode.TIMEOUT, AIErrorCode.NETWORK_ERROR}
)

JITTER_RATIO = 0.25

OnRetry = Callable[[int, AIError, float], None]


@dataclass(frozen=True)
class RetryOptions:
    """Backoff policy.

    Attributes:
        max_retries:        Retries after the first attempt.
        initial_delay_ms:   Delay before the first retry.
        max_delay_ms:       Upper bound for any single delay.
        backoff_multiplier: Growth factor per attempt.
        jitter:             Inflate computed delays by up to 25%.
        on_retry:           Called as ``(attempt, error, delay_ms)`` before each sleep.
    """

    max_retries: int = 3
    initial_delay_ms: float = 1000.0
    max_delay_ms: float = 30_000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    on_retry: OnRetry | None = None


def is_retryable(error: BaseException) -> bool:
    if not isinstance(error, AIError):
        return False
    if error.retryable or error.code in RETRYABLE_CODES:
        return True
    return error.status_code is not None and (
        error.status_code == 429 or error.status_code >= 500
    )


def compute_delay(
    attempt: int,
    error: BaseException | None,
    options: RetryOptions,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in ms before retrying after the zero-based ``attempt``."""
    if isinstance(error, AIError) and error.retry_after_ms is not None:
        return min(max(0.0, float(error.retry_after_ms)), options.max_delay_ms)

    delay = options.initial_delay_ms * (options.backoff_multiplier ** attempt)
    if options.jitter:
        delay += delay * JITTER_RATIO * rng()
    return min(delay, options.max_delay_ms)


class RetryExecutor:
    """Wraps async operations in a tenacity retry loop."""

    def __init__(
        self,
        defaults: RetryOptions | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._defaults = defaults or RetryOptions()
        self._sleep = sleep

    @property
    def defaults(self) -> RetryOptions:
        return self._defaults

    def options(self, **overrides: Any) -> RetryOptions:
        """Default options with per-call overrides applied."""
        return replace(self._defaults, **overrides)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        provider: ProviderType | str,
        options: RetryOptions | None = None,
    ) -> T:
        """Run ``operation``; re-raises the last error once retries are exhausted."""
        opts = options or self._defaults
        pid = provider_key(provider)

        def _wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            return compute_delay(retry_state.attempt_number - 1, error, opts) / 1000.0

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay_ms = (retry_state.next_action.sleep if retry_state.next_action else 0.0) * 1000.0
            logger.warning(
                "retry_scheduled",
                provider=pid,
                attempt=retry_state.attempt_number,
                delay_ms=round(delay_ms, 1),
                code=getattr(getattr(error, "code", None), "value", None),
                error=str(error),
            )
            if opts.on_retry is not None and isinstance(error, AIError):
                opts.on_retry(retry_state.attempt_number, error, delay_ms)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(opts.max_retries + 1),
            wait=_wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(operation)


_default_executor = RetryExecutor()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    provider: ProviderType | str,
    options: RetryOptions | None = None,
) -> T:
    """Module-level convenience over a default ``RetryExecutor``."""
    return await _default_executor.with_retry(operation, provider, options)
