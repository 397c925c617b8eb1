"""Shared request flow for HTTP-backed provider adapters.

Every adapter call goes through the same sequence:

    availability → cache lookup → local token bucket → retried,
    timeout-bounded provider call → cost estimate → cache store

Transport failures are converted to ``AIError`` here so nothing raw leaks
past the adapter boundary.  Outcome tracking (``track_request``) is left to
the orchestrator so each request is counted exactly once.
"""

from __future__ import annotations

import asyncio
import copy
import time
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx
import structlog

from ai_providers.context import ResilienceContext, get_default_context
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.ports import AIProviderPort
from ai_providers.resilience.cache import generate_user_isolated_key
from ai_providers.resilience.retry import RetryOptions
from ai_providers.types import (
    AIRequest,
    AIResponse,
    AIUsage,
    BaseAIRequest,
    BaseAIResponse,
    RateLimitStatus,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R", bound=BaseAIResponse)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a ``Retry-After`` header (delta-seconds form only)."""
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


class BaseProviderAdapter(AIProviderPort):
    """Common plumbing for the concrete adapters."""

    display_name: str = "provider"

    def __init__(
        self,
        *,
        api_key: str = "",
        context: ResilienceContext | None = None,
        timeout_s: float = 60.0,
        enable_cache: bool = True,
        cache_ttl_seconds: float = 300.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._ctx = context or get_default_context()
        self._timeout_s = timeout_s
        self._enable_cache = enable_cache
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._client = client or httpx.AsyncClient()

    # ── Port ─────────────────────────────────────────────────
    def is_available(self) -> bool:
        return bool(self._api_key)

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._ctx.rate_limiter.get_status(self.provider_type)

    async def execute(self, request: AIRequest) -> AIResponse:
        if not self.supports(request.capability):
            raise AIError(
                f"{self.display_name} does not support request type: {request.capability.value}",
                AIErrorCode.INVALID_REQUEST,
                self.provider_type,
            )
        return await self._dispatch(request)

    async def _dispatch(self, request: AIRequest) -> AIResponse:
        raise NotImplementedError

    async def close(self) -> None:
        await self._client.aclose()

    # ── Flow ─────────────────────────────────────────────────
    async def _run(
        self,
        request: BaseAIRequest,
        *,
        operation: Callable[[], Awaitable[T]],
        build: Callable[[T, str, float], R],
        cache_namespace: str | None = None,
        model: str = "",
        cache_params: Mapping[str, Any] | None = None,
    ) -> R:
        """Serve ``request`` from cache or via ``operation``.

        ``operation`` does the provider work (using ``_call_with_retry`` for
        the retried parts); ``build`` turns its result into a response given
        the request id and latency in ms.  Passing ``cache_params=None``
        disables caching for the call.
        """
        request_id = request.request_id or self._new_request_id()
        start = time.monotonic()
        self._ensure_available()

        cache_key: str | None = None
        if self._enable_cache and cache_params is not None and not request.skip_cache:
            cache_key = generate_user_isolated_key(
                cache_namespace or self.provider_type.value,
                model,
                request.user_id,
                cache_params,
            )
            cached = self._ctx.cache.get(cache_key)
            if cached is not None:
                logger.debug("provider_cache_hit", provider=self.provider_type.value, request_id=request_id)
                return replace(
                    cached,
                    request_id=request_id,
                    cached=True,
                    usage=copy.deepcopy(cached.usage),
                    latency_ms=(time.monotonic() - start) * 1000,
                )

        self._acquire_rate_limit()

        result = await operation()
        response = build(result, request_id, (time.monotonic() - start) * 1000)

        if cache_key is not None:
            self._ctx.cache.set(
                cache_key, replace(response, usage=copy.deepcopy(response.usage)), self._cache_ttl
            )
        return response

    async def _call_with_retry(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout_s: float | None = None,
        max_retries: int | None = None,
    ) -> T:
        timeout = timeout_s or self._timeout_s
        options: RetryOptions = self._ctx.retry.options(
            max_retries=self._max_retries if max_retries is None else max_retries,
            on_retry=self._on_retry,
        )
        return await self._ctx.retry.with_retry(
            lambda: self._with_timeout(factory, timeout),
            self.provider_type,
            options,
        )

    async def _with_timeout(self, factory: Callable[[], Awaitable[T]], timeout_s: float) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise AIError(
                f"{self.display_name} request timed out after {timeout_s}s",
                AIErrorCode.TIMEOUT,
                self.provider_type,
                retryable=True,
            ) from exc
        except httpx.TransportError as exc:
            raise AIError(
                f"{self.display_name} network error: {exc}",
                AIErrorCode.NETWORK_ERROR,
                self.provider_type,
                retryable=True,
            ) from exc

    def _on_retry(self, attempt: int, error: AIError, delay_ms: float) -> None:
        if error.code == AIErrorCode.RATE_LIMITED:
            self._ctx.cost_tracker.track_rate_limit_hit(self.provider_type)

    # ── Helpers ──────────────────────────────────────────────
    def _ensure_available(self) -> None:
        if not self.is_available():
            raise AIError(
                f"{self.display_name} API key not configured",
                AIErrorCode.PROVIDER_UNAVAILABLE,
                self.provider_type,
            )

    def _acquire_rate_limit(self) -> None:
        limiter = self._ctx.rate_limiter
        if limiter.try_acquire(self.provider_type):
            return
        self._ctx.cost_tracker.track_rate_limit_hit(self.provider_type)
        status = limiter.get_status(self.provider_type)
        raise AIError(
            f"Rate limit exceeded for {self.display_name} API",
            AIErrorCode.RATE_LIMITED,
            self.provider_type,
            status_code=429,
            retryable=True,
            retry_after_ms=max(0.0, (status.reset_at - self._ctx.clock()) * 1000),
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Classify an error response; a 429 also folds ``Retry-After`` into the bucket."""
        if response.is_success:
            return
        retry_after_s = parse_retry_after(response.headers.get("retry-after"))
        if response.status_code == 429:
            self._ctx.rate_limiter.handle_rate_limit_response(self.provider_type, retry_after_s)
        raise AIError.from_status(
            response.status_code,
            f"{self.display_name} API error: {response.status_code} - {response.text[:500]}",
            self.provider_type,
            retry_after_ms=retry_after_s * 1000 if retry_after_s is not None else None,
        )

    def _usage(
        self,
        *,
        model: str,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        image_count: int = 0,
        raw: dict[str, Any] | None = None,
    ) -> AIUsage:
        estimate = self._ctx.cost_tracker.estimate_cost(
            self.provider_type,
            input_tokens or 0,
            output_tokens or 0,
            image_count,
            model,
        )
        total = None
        if input_tokens is not None or output_tokens is not None:
            total = (input_tokens or 0) + (output_tokens or 0)
        return AIUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
            image_count=image_count or None,
            estimated_cost_usd=estimate.estimated_cost_usd,
            raw=raw,
        )

    def _new_request_id(self) -> str:
        return f"{self.provider_type.value}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
