"""Prometheus metrics for AI provider traffic."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


# ── Provider traffic ─────────────────────────────────────────
PROVIDER_REQUESTS_TOTAL = Counter(
    "ai_provider_requests_total",
    "Completed AI provider requests",
    ["provider", "status", "cached"],
)

PROVIDER_LATENCY = Histogram(
    "ai_provider_latency_seconds",
    "AI provider request latency",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

PROVIDER_COST_USD = Counter(
    "ai_provider_cost_usd_total",
    "Estimated spend per provider in USD",
    ["provider"],
)

RATE_LIMIT_HITS = Counter(
    "ai_provider_rate_limit_hits_total",
    "Requests refused by a local or remote rate limit",
    ["provider"],
)

# ── Resilience ───────────────────────────────────────────────
CIRCUIT_TRANSITIONS = Counter(
    "ai_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "state"],
)

CACHE_OPERATIONS = Counter(
    "ai_cache_operations_total",
    "Response cache lookups by result",
    ["result"],  # hit / miss / evicted
)
