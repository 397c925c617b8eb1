"""Shared test fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from ai_providers.config import Settings, get_settings
from ai_providers.context import ResilienceContext, create_context
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.ports import AIProviderPort
from ai_providers.types import (
    AIRequest,
    AIResponse,
    AIUsage,
    Capability,
    ProviderType,
    RateLimitStatus,
    TextGenerationResponse,
    VisionResponse,
    VisionRequest,
    MultiImageVisionRequest,
)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement that records requested delays (seconds)."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeProvider(AIProviderPort):
    """Scripted adapter: returns canned text or raises queued errors."""

    def __init__(
        self,
        provider: ProviderType,
        capabilities: set[Capability] | None = None,
        *,
        available: bool = True,
        errors: list[Exception] | None = None,
        text: str = "ok",
        cost: float = 0.001,
    ) -> None:
        self._provider = provider
        self._capabilities = frozenset(capabilities or {Capability.TEXT_GENERATION})
        self.available = available
        self.errors = list(errors or [])
        self.text = text
        self.cost = cost
        self.calls: list[AIRequest] = []
        self.closed = False

    @property
    def provider_type(self) -> ProviderType:
        return self._provider

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._capabilities

    def is_available(self) -> bool:
        return self.available

    def get_rate_limit_status(self) -> RateLimitStatus:
        return RateLimitStatus(remaining=10, limit=10, reset_at=0.0, is_limited=False)

    async def execute(self, request: AIRequest) -> AIResponse:
        self.calls.append(request)
        if self.errors:
            raise self.errors.pop(0)
        usage = AIUsage(input_tokens=10, output_tokens=5, total_tokens=15, estimated_cost_usd=self.cost)
        if isinstance(request, (VisionRequest, MultiImageVisionRequest)):
            return VisionResponse(
                request_id=request.request_id or "r",
                provider=self._provider,
                latency_ms=5.0,
                text=self.text,
                usage=usage,
            )
        return TextGenerationResponse(
            request_id=request.request_id or "r",
            provider=self._provider,
            latency_ms=5.0,
            text=self.text,
            usage=usage,
        )

    async def close(self) -> None:
        self.closed = True


def ai_error(
    code: AIErrorCode,
    provider: ProviderType | str = ProviderType.CLAUDE,
    **kwargs: Any,
) -> AIError:
    return AIError(f"{code.value} from test", code, provider, **kwargs)


# ═══════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings() -> Settings:
    return get_settings(
        _env_file=None,
        anthropic_api_key="test-anthropic",
        google_ai_api_key="test-google",
        leonardo_api_key="test-leonardo",
    )


@pytest.fixture
def ctx(settings: Settings, clock: FakeClock, sleeps: SleepRecorder) -> ResilienceContext:
    """Isolated resilience context on a fake clock with no real sleeping."""
    return create_context(settings, clock=clock, sleep=sleeps)


@pytest.fixture
def fake_provider() -> Callable[..., FakeProvider]:
    return FakeProvider
