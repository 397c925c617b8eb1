"""Cost and usage tracking across providers.

``track_request`` is the single mutator for request outcomes and is called
once per completed request.  Latency is a running mean, cost is summed.
Prometheus collectors are fed from the same recording points.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

import structlog

from ai_providers.observability.metrics import (
    PROVIDER_COST_USD,
    PROVIDER_LATENCY,
    PROVIDER_REQUESTS_TOTAL,
    RATE_LIMIT_HITS,
)
from ai_providers.types import (
    AIMetrics,
    AIUsage,
    CostEstimate,
    ProviderMetrics,
    ProviderType,
    provider_key,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per million input/output tokens, plus a flat per-image price."""

    input_per_million: float = 0.0
    output_per_million: float = 0.0
    per_image: float = 0.0


DEFAULT_PRICING_KEY = "default"

PRICING: dict[str, dict[str, ModelPricing]] = {
    ProviderType.CLAUDE.value: {
        DEFAULT_PRICING_KEY: ModelPricing(input_per_million=3.0, output_per_million=15.0),
        "claude-opus-4": ModelPricing(input_per_million=15.0, output_per_million=75.0),
        "claude-haiku-4-5": ModelPricing(input_per_million=1.0, output_per_million=5.0),
        "claude-3-5-haiku": ModelPricing(input_per_million=0.8, output_per_million=4.0),
    },
    ProviderType.GEMINI.value: {
        DEFAULT_PRICING_KEY: ModelPricing(input_per_million=0.5, output_per_million=3.0),
        "gemini-2.5-pro": ModelPricing(input_per_million=1.25, output_per_million=10.0),
        "gemini-2.5-flash": ModelPricing(input_per_million=0.3, output_per_million=2.5),
        "gemini-2.0-flash": ModelPricing(input_per_million=0.1, output_per_million=0.4),
    },
    ProviderType.LEONARDO.value: {
        DEFAULT_PRICING_KEY: ModelPricing(per_image=0.02),
    },
    ProviderType.MOCK.value: {
        DEFAULT_PRICING_KEY: ModelPricing(),
    },
}


class CostTracker:
    """Thread-safe aggregate of request outcomes, latency and spend."""

    def __init__(
        self,
        pricing: Mapping[str, Mapping[str, ModelPricing]] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pricing = {provider_key(k): dict(v) for k, v in (pricing or PRICING).items()}
        self._clock = clock
        self._metrics = AIMetrics()
        self._lock = threading.Lock()

    # ── Pricing ──────────────────────────────────────────────
    def estimate_cost(
        self,
        provider: ProviderType | str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        image_count: int = 0,
        model: str | None = None,
    ) -> CostEstimate:
        pid = provider_key(provider)
        pricing = self._lookup_pricing(pid, model)
        cost = (
            input_tokens / 1_000_000 * pricing.input_per_million
            + output_tokens / 1_000_000 * pricing.output_per_million
            + image_count * pricing.per_image
        )
        return CostEstimate(
            provider=pid,
            model=model or DEFAULT_PRICING_KEY,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            image_count=image_count,
            estimated_cost_usd=round(cost, 8),
        )

    def _lookup_pricing(self, provider: str, model: str | None) -> ModelPricing:
        table = self._pricing.get(provider, {})
        default = table.get(DEFAULT_PRICING_KEY, ModelPricing())
        if not model:
            return default
        if model in table:
            return table[model]
        # Versioned model ids ("claude-opus-4-20250514") fall back to their family
        prefixes = [k for k in table if k != DEFAULT_PRICING_KEY and model.startswith(k)]
        if prefixes:
            return table[max(prefixes, key=len)]
        return default

    # ── Recording ────────────────────────────────────────────
    def track_request(
        self,
        provider: ProviderType | str,
        success: bool,
        latency_ms: float,
        usage: AIUsage | None = None,
        feature: str | None = None,
        cached: bool = False,
    ) -> None:
        pid = provider_key(provider)
        # Cache hits cost nothing: no paid call was made
        cost = 0.0
        if usage is not None and usage.estimated_cost_usd and not cached:
            cost = usage.estimated_cost_usd

        with self._lock:
            now = self._clock()
            m = self._metrics
            m.total_requests += 1
            if success:
                m.successful_requests += 1
            else:
                m.failed_requests += 1
            if cached:
                m.cache_hits += 1
            m.avg_latency_ms = (
                m.avg_latency_ms * (m.total_requests - 1) + latency_ms
            ) / m.total_requests
            m.estimated_total_cost_usd += cost

            pm = m.by_provider.setdefault(pid, ProviderMetrics())
            pm.requests += 1
            if success:
                pm.successes += 1
                pm.last_success_at = now
            else:
                pm.failures += 1
                pm.last_failure_at = now
            pm.avg_latency_ms = (pm.avg_latency_ms * (pm.requests - 1) + latency_ms) / pm.requests
            pm.estimated_cost_usd += cost

            if feature:
                m.by_feature[feature] = m.by_feature.get(feature, 0) + 1

        PROVIDER_REQUESTS_TOTAL.labels(
            provider=pid,
            status="success" if success else "failure",
            cached=str(cached).lower(),
        ).inc()
        PROVIDER_LATENCY.labels(provider=pid).observe(latency_ms / 1000.0)
        if cost:
            PROVIDER_COST_USD.labels(provider=pid).inc(cost)

    def track_rate_limit_hit(self, provider: ProviderType | str) -> None:
        pid = provider_key(provider)
        with self._lock:
            pm = self._metrics.by_provider.setdefault(pid, ProviderMetrics())
            pm.rate_limit_hits += 1
        RATE_LIMIT_HITS.labels(provider=pid).inc()
        logger.debug("rate_limit_hit_tracked", provider=pid)

    # ── Reads ────────────────────────────────────────────────
    def get_metrics(self) -> AIMetrics:
        """Deep copy; mutating it never touches tracker state."""
        with self._lock:
            return copy.deepcopy(self._metrics)

    def get_provider_metrics(self, provider: ProviderType | str) -> ProviderMetrics:
        with self._lock:
            pm = self._metrics.by_provider.get(provider_key(provider))
            return copy.deepcopy(pm) if pm is not None else ProviderMetrics()

    def get_success_rate(self, provider: ProviderType | str | None = None) -> float:
        """Success percentage, globally or for one provider (100.0 when idle)."""
        with self._lock:
            if provider is None:
                total = self._metrics.total_requests
                ok = self._metrics.successful_requests
            else:
                pm = self._metrics.by_provider.get(provider_key(provider))
                total = pm.requests if pm else 0
                ok = pm.successes if pm else 0
        return (ok / total) * 100 if total else 100.0

    def get_cache_hit_rate(self) -> float:
        with self._lock:
            total = self._metrics.total_requests
            return (self._metrics.cache_hits / total) * 100 if total else 0.0

    def get_summary(self) -> str:
        m = self.get_metrics()
        lines = [
            "AI usage summary",
            f"  requests: {m.total_requests} "
            f"(ok {m.successful_requests}, failed {m.failed_requests}, cached {m.cache_hits})",
            f"  success rate: {self.get_success_rate():.1f}%",
            f"  cache hit rate: {self.get_cache_hit_rate():.1f}%",
            f"  avg latency: {m.avg_latency_ms:.0f}ms",
            f"  estimated cost: ${m.estimated_total_cost_usd:.4f}",
        ]
        for pid, pm in sorted(m.by_provider.items()):
            lines.append(
                f"  [{pid}] {pm.requests} req, {pm.successes} ok, {pm.failures} failed, "
                f"{pm.rate_limit_hits} rate-limited, avg {pm.avg_latency_ms:.0f}ms, "
                f"${pm.estimated_cost_usd:.4f}"
            )
        if m.by_feature:
            features = ", ".join(f"{k}={v}" for k, v in sorted(m.by_feature.items()))
            lines.append(f"  features: {features}")
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._metrics = AIMetrics()
        logger.info("cost_tracker_reset")
