"""Tests for cost estimation and usage aggregation."""

from __future__ import annotations

import pytest

from ai_providers.resilience.cost_tracker import CostTracker, ModelPricing
from ai_providers.types import AIUsage, ProviderType
from conftest import FakeClock


class TestEstimateCost:
    def test_provider_default_pricing(self) -> None:
        tracker = CostTracker()
        est = tracker.estimate_cost("claude", input_tokens=1_000_000, output_tokens=1_000_000)
        assert est.estimated_cost_usd == pytest.approx(18.0)
        assert est.model == "default"

    def test_model_specific_pricing(self) -> None:
        tracker = CostTracker()
        est = tracker.estimate_cost("gemini", 1_000_000, 0, model="gemini-2.0-flash")
        assert est.estimated_cost_usd == pytest.approx(0.1)

    def test_versioned_model_matches_family(self) -> None:
        tracker = CostTracker()
        est = tracker.estimate_cost("claude", 0, 1_000_000, model="claude-opus-4-20250514")
        assert est.estimated_cost_usd == pytest.approx(75.0)

    def test_unknown_model_falls_back_to_default(self) -> None:
        tracker = CostTracker()
        est = tracker.estimate_cost(ProviderType.GEMINI, 1_000_000, 0, model="gemini-next")
        assert est.estimated_cost_usd == pytest.approx(0.5)

    def test_per_image_pricing(self) -> None:
        tracker = CostTracker()
        assert tracker.estimate_cost("leonardo", image_count=3).estimated_cost_usd == pytest.approx(0.06)

    def test_custom_pricing_table(self) -> None:
        tracker = CostTracker({"x": {"default": ModelPricing(per_image=1.5)}})
        assert tracker.estimate_cost("x", image_count=2).estimated_cost_usd == pytest.approx(3.0)
        assert tracker.estimate_cost("unknown", 1000, 1000).estimated_cost_usd == 0.0


class TestTrackRequest:
    def test_running_mean_latency(self, clock: FakeClock) -> None:
        tracker = CostTracker(clock=clock)
        tracker.track_request("claude", True, 100.0)
        tracker.track_request("claude", True, 200.0)
        tracker.track_request("gemini", False, 600.0)
        m = tracker.get_metrics()
        assert m.total_requests == 3
        assert m.avg_latency_ms == pytest.approx(300.0)
        assert m.by_provider["claude"].avg_latency_ms == pytest.approx(150.0)
        assert m.by_provider["gemini"].failures == 1
        assert m.by_provider["gemini"].last_failure_at == clock.now

    def test_cost_is_summed(self) -> None:
        tracker = CostTracker()
        tracker.track_request("claude", True, 10.0, AIUsage(estimated_cost_usd=0.25))
        tracker.track_request("claude", True, 10.0, AIUsage(estimated_cost_usd=0.5))
        m = tracker.get_metrics()
        assert m.estimated_total_cost_usd == pytest.approx(0.75)
        assert m.by_provider["claude"].estimated_cost_usd == pytest.approx(0.75)

    def test_cache_hits_cost_nothing(self) -> None:
        tracker = CostTracker()
        tracker.track_request("claude", True, 1.0, AIUsage(estimated_cost_usd=0.25), cached=True)
        m = tracker.get_metrics()
        assert m.cache_hits == 1
        assert m.estimated_total_cost_usd == 0.0
        assert tracker.get_cache_hit_rate() == 100.0

    def test_feature_counter(self) -> None:
        tracker = CostTracker()
        tracker.track_request("claude", True, 1.0, feature="story")
        tracker.track_request("gemini", True, 1.0, feature="story")
        tracker.track_request("gemini", True, 1.0, feature="assets")
        assert tracker.get_metrics().by_feature == {"story": 2, "assets": 1}

    def test_success_rate(self) -> None:
        tracker = CostTracker()
        assert tracker.get_success_rate() == 100.0
        tracker.track_request("claude", True, 1.0)
        tracker.track_request("claude", False, 1.0)
        tracker.track_request("gemini", True, 1.0)
        assert tracker.get_success_rate() == pytest.approx(200 / 3)
        assert tracker.get_success_rate("claude") == 50.0
        assert tracker.get_success_rate("leonardo") == 100.0

    def test_rate_limit_hits(self) -> None:
        tracker = CostTracker()
        tracker.track_rate_limit_hit(ProviderType.CLAUDE)
        tracker.track_rate_limit_hit("claude")
        assert tracker.get_provider_metrics("claude").rate_limit_hits == 2
        assert tracker.get_metrics().total_requests == 0


class TestSnapshots:
    def test_get_metrics_is_a_deep_copy(self) -> None:
        tracker = CostTracker()
        tracker.track_request("claude", True, 1.0, feature="story")
        snapshot = tracker.get_metrics()
        snapshot.total_requests = 999
        snapshot.by_provider["claude"].requests = 999
        snapshot.by_feature["story"] = 999
        fresh = tracker.get_metrics()
        assert fresh.total_requests == 1
        assert fresh.by_provider["claude"].requests == 1
        assert fresh.by_feature["story"] == 1

    def test_summary_and_reset(self) -> None:
        tracker = CostTracker()
        tracker.track_request("gemini", True, 42.0, AIUsage(estimated_cost_usd=0.01), feature="chat")
        summary = tracker.get_summary()
        assert "requests: 1" in summary
        assert "[gemini]" in summary
        assert "chat=1" in summary
        tracker.reset()
        assert tracker.get_metrics().total_requests == 0
