"""Unified provider: capability-based routing with fallback across adapters.

Composes the adapters with the shared resilience context (circuit breakers,
rate limiter, cache, cost tracker) into one entry-point.  Callers ask for a
capability; the orchestrator picks candidates, tries them in order and
returns the first success.  It never merges results across providers.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Iterable, Mapping

import structlog
from structlog.contextvars import bound_contextvars

from ai_providers.adapters.claude import ClaudeAdapter
from ai_providers.adapters.gemini import GeminiAdapter
from ai_providers.adapters.leonardo import LeonardoAdapter
from ai_providers.adapters.mock import MockAdapter
from ai_providers.config import Settings, get_settings
from ai_providers.context import ResilienceContext, create_context, get_default_context
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.ports import AIProviderPort
from ai_providers.resilience.circuit_breaker import CircuitStatus
from ai_providers.resilience.retry import is_retryable
from ai_providers.types import (
    AIMetrics,
    AIRequest,
    AIResponse,
    AsyncImageGenerationResponse,
    CacheStats,
    Capability,
    GeneratedImage,
    ImageGenerationRequest,
    ImageGenerationResponse,
    MultiImageVisionRequest,
    ProviderType,
    RateLimitStatus,
    TextGenerationRequest,
    TextGenerationResponse,
    VisionRequest,
    VisionResponse,
    provider_key,
)

logger = structlog.get_logger(__name__)


DEFAULT_FALLBACKS: dict[Capability, list[ProviderType]] = {
    Capability.TEXT_GENERATION: [ProviderType.CLAUDE, ProviderType.GEMINI],
    Capability.VISION: [ProviderType.GEMINI],
    Capability.IMAGE_GENERATION: [ProviderType.LEONARDO],
    Capability.TEXT_TO_IMAGE: [ProviderType.LEONARDO],
}


class UnifiedProvider:
    """Routes requests to the first healthy provider that can serve them.

    Usage::

        unified = build_unified_provider()
        response = await unified.generate_text(
            TextGenerationRequest(user_prompt="Summarise this scene"),
        )

    Candidate order is the preferred provider (if available), then the
    capability's fallback chain, then the mock provider when mock fallback
    is enabled.  A provider is available when it is configured and its
    circuit admits traffic.
    """

    def __init__(
        self,
        providers: Iterable[AIProviderPort],
        *,
        context: ResilienceContext | None = None,
        fallbacks: Mapping[Capability, list[ProviderType]] | None = None,
        enable_mock_fallback: bool = False,
        mock_provider: AIProviderPort | None = None,
    ) -> None:
        self._ctx = context or get_default_context()
        self._providers: dict[str, AIProviderPort] = {
            provider_key(p.provider_type): p for p in providers
        }
        self._fallbacks = {
            cap: list(chain) for cap, chain in (fallbacks or DEFAULT_FALLBACKS).items()
        }
        self._mock: AIProviderPort | None = None
        if enable_mock_fallback:
            self._mock = mock_provider or MockAdapter()

    @property
    def context(self) -> ResilienceContext:
        return self._ctx

    # ── Typed entry-points ───────────────────────────────────
    async def generate_text(
        self,
        request: TextGenerationRequest,
        preferred_provider: ProviderType | str | None = None,
    ) -> TextGenerationResponse:
        response = await self.execute_with_fallback(request, Capability.TEXT_GENERATION, preferred_provider)
        assert isinstance(response, TextGenerationResponse)
        return response

    async def analyze_image(
        self,
        request: VisionRequest | MultiImageVisionRequest,
        preferred_provider: ProviderType | str | None = None,
    ) -> VisionResponse:
        response = await self.execute_with_fallback(request, Capability.VISION, preferred_provider)
        assert isinstance(response, VisionResponse)
        return response

    async def generate_images(
        self,
        request: ImageGenerationRequest,
        preferred_provider: ProviderType | str | None = None,
    ) -> ImageGenerationResponse | AsyncImageGenerationResponse:
        response = await self.execute_with_fallback(request, Capability.IMAGE_GENERATION, preferred_provider)
        assert isinstance(response, (ImageGenerationResponse, AsyncImageGenerationResponse))
        return response

    # ── Core loop ────────────────────────────────────────────
    async def execute_with_fallback(
        self,
        request: AIRequest,
        capability: Capability,
        preferred_provider: ProviderType | str | None = None,
    ) -> AIResponse:
        """Try candidates in order: first success wins, last error wins.

        Raises:
            AIError: PROVIDER_UNAVAILABLE when no candidate exists, otherwise
                the first non-retryable error or the last error seen.
        """
        if request.request_id is None:
            request = replace(request, request_id=f"req-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}")

        with bound_contextvars(request_id=request.request_id, capability=capability.value):
            candidates = self._build_candidates(capability, preferred_provider)
            if not candidates:
                logger.warning("no_provider_available")
                raise AIError(
                    f"No available provider for capability: {capability.value}",
                    AIErrorCode.PROVIDER_UNAVAILABLE,
                    provider_key(preferred_provider) if preferred_provider else "unified",
                )

            last_error: AIError | None = None
            attempted: list[str] = []

            for provider in candidates:
                pid = provider_key(provider.provider_type)
                breaker = self._ctx.circuit_breakers.get(pid)

                # State may have moved since ordering; this also claims a half-open probe
                if not breaker.can_execute():
                    logger.info("provider_skipped_circuit_open", provider=pid)
                    continue

                attempted.append(pid)
                start = time.monotonic()
                try:
                    response = await provider.execute(request)
                except Exception as exc:
                    latency_ms = (time.monotonic() - start) * 1000
                    error = self._classify(exc, pid)
                    if error.code != AIErrorCode.CIRCUIT_OPEN:
                        breaker.record_failure()
                    self._ctx.cost_tracker.track_request(
                        pid, False, latency_ms, feature=request.feature
                    )
                    logger.warning(
                        "provider_request_failed",
                        provider=pid,
                        code=error.code.value,
                        retryable=error.retryable,
                        error=error.message,
                    )
                    last_error = error
                    # CIRCUIT_OPEN means "try the next candidate now"
                    if error.code == AIErrorCode.CIRCUIT_OPEN or is_retryable(error):
                        continue
                    if error is exc:
                        raise
                    raise error from exc
                except BaseException:
                    # Cancellation carries no verdict on the provider
                    breaker.release_probe()
                    raise

                latency_ms = (time.monotonic() - start) * 1000
                breaker.record_success()
                self._ctx.cost_tracker.track_request(
                    pid,
                    True,
                    response.latency_ms or latency_ms,
                    usage=response.usage,
                    feature=request.feature,
                    cached=response.cached,
                )
                if len(attempted) > 1:
                    logger.info(
                        "provider_failover_success",
                        provider=pid,
                        failed_providers=attempted[:-1],
                    )
                return response

            if last_error is not None:
                raise last_error
            raise AIError(
                f"All providers unavailable for capability: {capability.value}",
                AIErrorCode.PROVIDER_UNAVAILABLE,
                "unified",
            )

    def _build_candidates(
        self,
        capability: Capability,
        preferred_provider: ProviderType | str | None,
    ) -> list[AIProviderPort]:
        order: list[str] = []
        if preferred_provider is not None:
            order.append(provider_key(preferred_provider))
        order.extend(provider_key(p) for p in self._fallbacks.get(capability, []))

        seen: set[str] = set()
        candidates: list[AIProviderPort] = []
        for pid in order:
            if pid in seen:
                continue
            seen.add(pid)
            provider = self._providers.get(pid)
            if provider is None or not provider.supports(capability):
                continue
            if self._is_available(provider):
                candidates.append(provider)

        if self._mock is not None and provider_key(self._mock.provider_type) not in seen:
            candidates.append(self._mock)
        return candidates

    def _is_available(self, provider: AIProviderPort) -> bool:
        if not provider.is_available():
            return False
        return self._ctx.circuit_breakers.get(provider.provider_type).allows_traffic()

    @staticmethod
    def _classify(exc: Exception, provider: str) -> AIError:
        if isinstance(exc, AIError):
            return exc
        logger.exception("provider_unexpected_error", provider=provider)
        return AIError(str(exc) or type(exc).__name__, AIErrorCode.UNKNOWN_ERROR, provider)

    # ── Provider introspection ───────────────────────────────
    def get_provider(self, provider: ProviderType | str) -> AIProviderPort | None:
        pid = provider_key(provider)
        if self._mock is not None and pid == provider_key(self._mock.provider_type):
            return self._mock
        return self._providers.get(pid)

    def is_provider_available(self, provider: ProviderType | str) -> bool:
        adapter = self.get_provider(provider)
        return adapter is not None and self._is_available(adapter)

    def get_available_providers(self, capability: Capability) -> list[ProviderType]:
        return [p.provider_type for p in self._build_candidates(capability, None)]

    # ── Metrics & state ──────────────────────────────────────
    def get_metrics(self) -> AIMetrics:
        return self._ctx.cost_tracker.get_metrics()

    def get_metrics_summary(self) -> str:
        return self._ctx.cost_tracker.get_summary()

    def get_cache_stats(self) -> CacheStats:
        return self._ctx.cache.get_stats()

    def get_rate_limit_status(self) -> dict[str, RateLimitStatus]:
        return {pid: p.get_rate_limit_status() for pid, p in self._providers.items()}

    def get_circuit_breaker_status(self) -> dict[str, CircuitStatus]:
        return self._ctx.circuit_breakers.get_all_status(list(self._providers))

    def clear_cache(self) -> None:
        self._ctx.cache.clear()
        logger.info("unified_cache_cleared")

    def reset_metrics(self) -> None:
        self._ctx.cost_tracker.reset()

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


# ═══════════════════════════════════════════════════════════════
#  Factories
# ═══════════════════════════════════════════════════════════════
def build_unified_provider(
    settings: Settings | None = None,
    context: ResilienceContext | None = None,
) -> UnifiedProvider:
    """Wire every known adapter from settings into a ``UnifiedProvider``."""
    s = settings or get_settings()
    ctx = context
    if ctx is None:
        # The shared context was built from whatever settings came first
        ctx = create_context(s) if settings is not None else get_default_context()
    text_opts: dict[str, Any] = dict(
        context=ctx,
        timeout_s=s.text_timeout_seconds,
        enable_cache=s.cache_enabled,
        cache_ttl_seconds=s.cache_ttl_seconds,
        max_retries=s.retry_max_retries,
    )
    providers: list[AIProviderPort] = [
        ClaudeAdapter(api_key=s.anthropic_api_key, model=s.claude_model, **text_opts),
        GeminiAdapter(
            api_key=s.google_ai_api_key,
            text_model=s.gemini_text_model,
            vision_model=s.gemini_vision_model,
            **text_opts,
        ),
        LeonardoAdapter(
            api_key=s.leonardo_api_key,
            model_id=s.leonardo_model_id,
            context=ctx,
            timeout_s=s.image_timeout_seconds,
        ),
    ]
    logger.info(
        "unified_provider_built",
        configured=[p.provider_type.value for p in providers if p.is_available()],
        mock_fallback=s.mock_fallback_enabled,
    )
    return UnifiedProvider(
        providers,
        context=ctx,
        fallbacks=s.fallback_chains(),
        enable_mock_fallback=s.mock_fallback_enabled,
    )


_unified: UnifiedProvider | None = None
_unified_lock = threading.Lock()


def get_unified_provider() -> UnifiedProvider:
    """Process-wide instance, built lazily on first use."""
    global _unified
    if _unified is None:
        with _unified_lock:
            if _unified is None:
                _unified = build_unified_provider()
    return _unified


def reset_unified_provider() -> None:
    global _unified
    with _unified_lock:
        _unified = None


# ═══════════════════════════════════════════════════════════════
#  Convenience functions
# ═══════════════════════════════════════════════════════════════
async def generate_text(
    prompt: str,
    system_prompt: str | None = None,
    *,
    preferred_provider: ProviderType | str | None = None,
    **options: Any,
) -> str:
    request = TextGenerationRequest(user_prompt=prompt, system_prompt=system_prompt, **options)
    response = await get_unified_provider().generate_text(request, preferred_provider)
    return response.text


async def analyze_image(
    image_data_url: str,
    prompt: str,
    *,
    preferred_provider: ProviderType | str | None = None,
    **options: Any,
) -> str:
    request = VisionRequest(image_data_url=image_data_url, prompt=prompt, **options)
    response = await get_unified_provider().analyze_image(request, preferred_provider)
    return response.text


async def generate_images(
    prompt: str,
    *,
    preferred_provider: ProviderType | str | None = None,
    **options: Any,
) -> list[GeneratedImage]:
    request = ImageGenerationRequest(prompt=prompt, **options)
    response = await get_unified_provider().generate_images(request, preferred_provider)
    if isinstance(response, AsyncImageGenerationResponse):
        raise AIError(
            "generate_images waits for results; use UnifiedProvider.generate_images for async mode",
            AIErrorCode.INVALID_REQUEST,
            response.provider,
        )
    return response.images
