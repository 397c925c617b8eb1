"""Tests for capability routing and fallback in UnifiedProvider."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from ai_providers.adapters.claude import ClaudeAdapter
from ai_providers.adapters.gemini import GeminiAdapter
from ai_providers.context import ResilienceContext
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.orchestrator import UnifiedProvider, build_unified_provider
from ai_providers.resilience.circuit_breaker import CircuitState
from ai_providers.types import (
    AIRequest,
    AIResponse,
    Capability,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ProviderType,
    TextGenerationRequest,
    VisionRequest,
)
from conftest import FakeClock, FakeProvider, ai_error


TEXT_CHAIN = {Capability.TEXT_GENERATION: [ProviderType.CLAUDE, ProviderType.GEMINI]}


def _trip(ctx: ResilienceContext, provider: ProviderType) -> None:
    breaker = ctx.circuit_breakers.get(provider)
    for _ in range(5):
        breaker.record_failure()
    assert breaker.state == CircuitState.OPEN


def _text(prompt: str = "hi", **kwargs) -> TextGenerationRequest:
    return TextGenerationRequest(user_prompt=prompt, **kwargs)


class HangingProvider(FakeProvider):
    """Never answers until the caller gives up."""

    async def execute(self, request: AIRequest) -> AIResponse:
        self.calls.append(request)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

# ═══════════════════════════════════════════════════════════════
#  Candidate selection
# ═══════════════════════════════════════════════════════════════
class TestCandidates:
    @pytest.mark.asyncio
    async def test_open_circuit_provider_is_never_invoked(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, text="from-a")
        b = FakeProvider(ProviderType.GEMINI, text="from-b")
        _trip(ctx, ProviderType.CLAUDE)
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        response = await unified.generate_text(_text())

        assert response.text == "from-b"
        assert a.calls == []
        assert len(b.calls) == 1

    @pytest.mark.asyncio
    async def test_preferred_provider_goes_first(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, text="from-a")
        b = FakeProvider(ProviderType.GEMINI, text="from-b")
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        response = await unified.generate_text(_text(), preferred_provider="gemini")

        assert response.provider == ProviderType.GEMINI
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_unavailable_preferred_is_skipped(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, text="from-a")
        b = FakeProvider(ProviderType.GEMINI, available=False)
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        response = await unified.generate_text(_text(), preferred_provider=ProviderType.GEMINI)

        assert response.text == "from-a"
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_capability_filter(self, ctx: ResilienceContext) -> None:
        text_only = FakeProvider(ProviderType.CLAUDE)
        vision = FakeProvider(ProviderType.GEMINI, {Capability.TEXT_GENERATION, Capability.VISION}, text="seen")
        unified = UnifiedProvider(
            [text_only, vision],
            context=ctx,
            fallbacks={Capability.VISION: [ProviderType.CLAUDE, ProviderType.GEMINI]},
        )

        response = await unified.analyze_image(
            VisionRequest(image_data_url="data:image/png;base64,AAAA", prompt="describe")
        )

        assert response.text == "seen"
        assert text_only.calls == []
        assert unified.get_available_providers(Capability.VISION) == [ProviderType.GEMINI]

    @pytest.mark.asyncio
    async def test_no_candidates_raises_provider_unavailable(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, available=False)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)

        with pytest.raises(AIError) as exc_info:
            await unified.generate_text(_text())
        assert exc_info.value.code == AIErrorCode.PROVIDER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_mock_fallback_is_last_resort(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, available=False)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN, enable_mock_fallback=True)

        response = await unified.generate_text(_text("tell me a story"))

        assert response.provider == ProviderType.MOCK
        assert "tell me a story" in response.text


# ═══════════════════════════════════════════════════════════════
#  Execution loop
# ═══════════════════════════════════════════════════════════════
class TestFallbackLoop:
    @pytest.mark.asyncio
    async def test_retryable_failure_moves_to_next(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, errors=[ai_error(AIErrorCode.NETWORK_ERROR, retryable=True)])
        b = FakeProvider(ProviderType.GEMINI, text="from-b")
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        response = await unified.generate_text(_text())

        assert response.text == "from-b"
        assert ctx.circuit_breakers.get("claude").get_status().failures == 1
        metrics = unified.get_metrics()
        assert metrics.by_provider["claude"].failures == 1
        assert metrics.by_provider["gemini"].successes == 1

    @pytest.mark.asyncio
    async def test_rate_limited_moves_to_next(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, errors=[ai_error(AIErrorCode.RATE_LIMITED, status_code=429)])
        b = FakeProvider(ProviderType.GEMINI, text="from-b")
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        assert (await unified.generate_text(_text())).text == "from-b"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_stops_the_loop(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(
            ProviderType.CLAUDE,
            errors=[ai_error(AIErrorCode.AUTHENTICATION_FAILED, status_code=401)],
        )
        b = FakeProvider(
            ProviderType.GEMINI,
            errors=[ai_error(AIErrorCode.AUTHENTICATION_FAILED, ProviderType.GEMINI, status_code=401)],
        )
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        with pytest.raises(AIError) as exc_info:
            await unified.generate_text(_text())
        assert exc_info.value.code == AIErrorCode.AUTHENTICATION_FAILED
        assert exc_info.value.provider == "claude"
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_last_error_wins_when_all_fail(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, errors=[ai_error(AIErrorCode.TIMEOUT)])
        b = FakeProvider(ProviderType.GEMINI, errors=[ai_error(AIErrorCode.NETWORK_ERROR, ProviderType.GEMINI)])
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        with pytest.raises(AIError) as exc_info:
            await unified.generate_text(_text())
        assert exc_info.value.code == AIErrorCode.NETWORK_ERROR
        assert exc_info.value.provider == "gemini"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, errors=[RuntimeError("kaboom")])
        b = FakeProvider(ProviderType.GEMINI)
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        with pytest.raises(AIError) as exc_info:
            await unified.generate_text(_text())
        assert exc_info.value.code == AIErrorCode.UNKNOWN_ERROR
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_circuit_open_error_skips_without_recording(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE, errors=[ai_error(AIErrorCode.CIRCUIT_OPEN)])
        b = FakeProvider(ProviderType.GEMINI, text="from-b")
        unified = UnifiedProvider([a, b], context=ctx, fallbacks=TEXT_CHAIN)

        assert (await unified.generate_text(_text())).text == "from-b"
        assert ctx.circuit_breakers.get("claude").get_status().failures == 0

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes_circuit(
        self, ctx: ResilienceContext, clock: FakeClock
    ) -> None:
        a = FakeProvider(ProviderType.CLAUDE, text="recovered")
        _trip(ctx, ProviderType.CLAUDE)
        clock.advance(30)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)

        assert (await unified.generate_text(_text())).text == "recovered"
        assert ctx.circuit_breakers.get("claude").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_leaves_circuit_recoverable(
        self, ctx: ResilienceContext, clock: FakeClock
    ) -> None:
        _trip(ctx, ProviderType.CLAUDE)
        clock.advance(31)
        hanging = HangingProvider(ProviderType.CLAUDE)
        unified = UnifiedProvider([hanging], context=ctx, fallbacks=TEXT_CHAIN)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(unified.generate_text(_text()), timeout=0.05)

        breaker = ctx.circuit_breakers.get("claude")
        assert len(hanging.calls) == 1
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.get_status().failures == 5
        assert breaker.allows_traffic() is True

        recovered = FakeProvider(ProviderType.CLAUDE, text="back")
        unified = UnifiedProvider([recovered], context=ctx, fallbacks=TEXT_CHAIN)
        assert (await unified.generate_text(_text())).text == "back"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_request_id_and_feature_tracking(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)

        request = _text(metadata={"feature": "beats"})
        await unified.generate_text(request)

        assert a.calls[0].request_id is not None
        assert request.request_id is None
        assert unified.get_metrics().by_feature == {"beats": 1}


# ═══════════════════════════════════════════════════════════════
#  End-to-end over real adapters
# ═══════════════════════════════════════════════════════════════
def _gemini_transport(calls: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "gemini says hi"}]}}],
                "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 4},
            },
        )

    return httpx.MockTransport(handler)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_claude_without_key_routes_to_gemini(self, ctx: ResilienceContext) -> None:
        gemini_calls: list[httpx.Request] = []
        claude = ClaudeAdapter(api_key="", context=ctx)
        gemini = GeminiAdapter(
            api_key="g-key",
            context=ctx,
            client=httpx.AsyncClient(transport=_gemini_transport(gemini_calls)),
        )
        unified = UnifiedProvider([claude, gemini], context=ctx, fallbacks=TEXT_CHAIN)

        response = await unified.generate_text(_text("say hi"))

        assert response.text == "gemini says hi"
        assert response.provider == ProviderType.GEMINI
        assert len(gemini_calls) == 1
        metrics = unified.get_metrics()
        assert metrics.by_provider["gemini"].requests == 1
        assert metrics.by_provider["gemini"].successes == 1
        assert "claude" not in metrics.by_provider
        assert ctx.circuit_breakers.get("gemini").state == CircuitState.CLOSED
        await unified.close()

    @pytest.mark.asyncio
    async def test_second_identical_call_is_cached(self, ctx: ResilienceContext) -> None:
        gemini_calls: list[httpx.Request] = []
        gemini = GeminiAdapter(
            api_key="g-key",
            context=ctx,
            client=httpx.AsyncClient(transport=_gemini_transport(gemini_calls)),
        )
        unified = UnifiedProvider([gemini], context=ctx, fallbacks=TEXT_CHAIN)

        first = await unified.generate_text(_text("same"))
        second = await unified.generate_text(_text("same"))

        assert first.cached is False
        assert second.cached is True
        assert second.text == first.text
        assert len(gemini_calls) == 1
        metrics = unified.get_metrics()
        assert metrics.cache_hits == 1
        assert metrics.by_provider["gemini"].estimated_cost_usd == pytest.approx(
            first.usage.estimated_cost_usd
        )
        await unified.close()

    @pytest.mark.asyncio
    async def test_built_from_settings_uses_mock_for_images_without_key(
        self, ctx: ResilienceContext, settings
    ) -> None:
        s = settings.model_copy(update={"leonardo_api_key": "", "enable_mock_fallback": True})
        unified = build_unified_provider(s, ctx)

        response = await unified.generate_images(ImageGenerationRequest(prompt="a castle", num_images=2))

        assert isinstance(response, ImageGenerationResponse)
        assert response.provider == ProviderType.MOCK
        assert len(response.images) == 2
        await unified.close()

    @pytest.mark.asyncio
    async def test_explicit_settings_get_their_own_context(self, settings) -> None:
        s = settings.model_copy(update={"claude_rpm": 2, "circuit_breaker_failure_threshold": 1})
        unified = build_unified_provider(s)

        assert unified.context.rate_limiter.get_status("claude").limit == 2
        unified.context.circuit_breakers.get("claude").record_failure()
        assert unified.context.circuit_breakers.get("claude").state == CircuitState.OPEN
        await unified.close()


# ═══════════════════════════════════════════════════════════════
#  Introspection
# ═══════════════════════════════════════════════════════════════
class TestIntrospection:
    def test_status_views(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)

        assert unified.get_provider("claude") is a
        assert unified.get_provider("gemini") is None
        assert unified.is_provider_available(ProviderType.CLAUDE) is True
        assert set(unified.get_circuit_breaker_status()) == {"claude"}
        assert set(unified.get_rate_limit_status()) == {"claude"}
        assert unified.get_cache_stats().size == 0

    @pytest.mark.asyncio
    async def test_reset_metrics_and_clear_cache(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)
        await unified.generate_text(_text())
        ctx.cache.set("k", "v")

        unified.reset_metrics()
        unified.clear_cache()

        assert unified.get_metrics().total_requests == 0
        assert unified.get_cache_stats().size == 0
        assert "requests: 0" in unified.get_metrics_summary()

    @pytest.mark.asyncio
    async def test_close_releases_adapters(self, ctx: ResilienceContext) -> None:
        a = FakeProvider(ProviderType.CLAUDE)
        unified = UnifiedProvider([a], context=ctx, fallbacks=TEXT_CHAIN)
        await unified.close()
        assert a.closed is True
