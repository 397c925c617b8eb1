"""Core types shared by the resilience layer, the adapters and the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, TypeVar, Union

T = TypeVar("T")


class ProviderType(str, enum.Enum):
    """Identity of a concrete AI provider."""

    CLAUDE = "claude"
    GEMINI = "gemini"
    LEONARDO = "leonardo"
    MOCK = "mock"


def provider_key(provider: ProviderType | str) -> str:
    """Normalise a provider identity to its plain string id."""
    if isinstance(provider, enum.Enum):
        return str(provider.value)
    return str(provider)


class Capability(str, enum.Enum):
    """A class of AI operation a provider may support."""

    TEXT_GENERATION = "text-generation"
    VISION = "vision"
    IMAGE_GENERATION = "image-generation"
    TEXT_TO_IMAGE = "text-to-image"


# ═══════════════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════════════
@dataclass(kw_only=True)
class BaseAIRequest:
    """Fields common to every request.

    Attributes:
        request_id: Echoed back on the response; generated when omitted.
        timeout_s:  Per-call timeout override (seconds).
        skip_cache: Bypass the response cache for this call.
        metadata:   Free-form tags; ``feature`` and ``user_id`` are understood.
    """

    capability: ClassVar[Capability]

    request_id: str | None = None
    timeout_s: float | None = None
    skip_cache: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def feature(self) -> str | None:
        value = self.metadata.get("feature")
        return str(value) if value is not None else None

    @property
    def user_id(self) -> str | None:
        value = self.metadata.get("user_id")
        return str(value) if value is not None else None


@dataclass(kw_only=True)
class TextGenerationRequest(BaseAIRequest):
    capability: ClassVar[Capability] = Capability.TEXT_GENERATION

    user_prompt: str
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(kw_only=True)
class VisionRequest(BaseAIRequest):
    capability: ClassVar[Capability] = Capability.VISION

    image_data_url: str
    prompt: str
    system_instruction: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(kw_only=True)
class MultiImageVisionRequest(BaseAIRequest):
    capability: ClassVar[Capability] = Capability.VISION

    image_data_urls: list[str]
    prompt: str
    system_instruction: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(kw_only=True)
class ImageGenerationRequest(BaseAIRequest):
    capability: ClassVar[Capability] = Capability.IMAGE_GENERATION

    prompt: str
    width: int = 1024
    height: int = 1024
    num_images: int = 1
    async_mode: bool = False


AIRequest = Union[
    TextGenerationRequest,
    VisionRequest,
    MultiImageVisionRequest,
    ImageGenerationRequest,
]


# ═══════════════════════════════════════════════════════════════
#  Usage & cost
# ═══════════════════════════════════════════════════════════════
@dataclass
class AIUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    image_count: int | None = None
    estimated_cost_usd: float | None = None
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class CostEstimate:
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    image_count: int
    estimated_cost_usd: float


# ═══════════════════════════════════════════════════════════════
#  Responses
# ═══════════════════════════════════════════════════════════════
@dataclass(kw_only=True)
class BaseAIResponse:
    request_id: str
    provider: ProviderType
    latency_ms: float
    cached: bool = False
    usage: AIUsage | None = None


@dataclass(kw_only=True)
class TextGenerationResponse(BaseAIResponse):
    text: str


@dataclass(kw_only=True)
class VisionResponse(BaseAIResponse):
    text: str


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    id: str
    width: int
    height: int


@dataclass(kw_only=True)
class ImageGenerationResponse(BaseAIResponse):
    images: list[GeneratedImage]
    generation_id: str


@dataclass(kw_only=True)
class AsyncImageGenerationResponse(BaseAIResponse):
    generation_id: str
    status: str = "pending"


AIResponse = Union[
    TextGenerationResponse,
    VisionResponse,
    ImageGenerationResponse,
    AsyncImageGenerationResponse,
]


# ═══════════════════════════════════════════════════════════════
#  Rate limiting & caching
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class RateLimitStatus:
    """Read projection of a provider's token bucket.

    ``reset_at`` is the epoch time (seconds) at which the bucket is full again.
    """

    remaining: int
    limit: int
    reset_at: float
    is_limited: bool


@dataclass
class CacheEntry(Generic[T]):
    value: T
    created_at: float
    expires_at: float
    hits: int = 0


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    max_size: int


# ═══════════════════════════════════════════════════════════════
#  Metrics
# ═══════════════════════════════════════════════════════════════
@dataclass
class ProviderMetrics:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    avg_latency_ms: float = 0.0
    rate_limit_hits: int = 0
    estimated_cost_usd: float = 0.0
    last_success_at: float | None = None
    last_failure_at: float | None = None


@dataclass
class AIMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    avg_latency_ms: float = 0.0
    by_provider: dict[str, ProviderMetrics] = field(default_factory=dict)
    by_feature: dict[str, int] = field(default_factory=dict)
    estimated_total_cost_usd: float = 0.0
