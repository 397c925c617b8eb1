"""Deterministic stand-in provider for development and tests.

Always available, never rate limited.  Outputs are derived from the request
so identical inputs give identical responses.
"""

from __future__ import annotations

import hashlib
import time
import uuid

from ai_providers.errors import AIError, AIErrorCode
from ai_providers.ports import AIProviderPort
from ai_providers.types import (
    AIRequest,
    AIResponse,
    AIUsage,
    AsyncImageGenerationResponse,
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
)

MOCK_IMAGE_BASE_URL = "https://placehold.co"


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()[:12]


class MockAdapter(AIProviderPort):
    def __init__(self, *, latency_ms: float = 0.0) -> None:
        self._latency_ms = latency_ms

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MOCK

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(Capability)

    def is_available(self) -> bool:
        return True

    def get_rate_limit_status(self) -> RateLimitStatus:
        return RateLimitStatus(remaining=1_000_000, limit=1_000_000, reset_at=time.time(), is_limited=False)

    async def execute(self, request: AIRequest) -> AIResponse:
        request_id = request.request_id or f"mock-{uuid.uuid4().hex[:12]}"
        common = dict(
            request_id=request_id,
            provider=self.provider_type,
            latency_ms=self._latency_ms,
            usage=AIUsage(input_tokens=0, output_tokens=0, total_tokens=0, estimated_cost_usd=0.0),
        )

        if isinstance(request, TextGenerationRequest):
            tag = _digest(request.system_prompt or "", request.user_prompt)
            return TextGenerationResponse(
                text=f"[mock:{tag}] {request.user_prompt[:200]}",
                **common,
            )
        if isinstance(request, MultiImageVisionRequest):
            tag = _digest(request.prompt, *request.image_data_urls)
            return VisionResponse(
                text=f"[mock:{tag}] analysed {len(request.image_data_urls)} images: {request.prompt[:200]}",
                **common,
            )
        if isinstance(request, VisionRequest):
            tag = _digest(request.prompt, request.image_data_url)
            return VisionResponse(text=f"[mock:{tag}] {request.prompt[:200]}", **common)
        if isinstance(request, ImageGenerationRequest):
            generation_id = f"mock-gen-{_digest(request.prompt, str(request.width), str(request.height))}"
            if request.async_mode:
                return AsyncImageGenerationResponse(generation_id=generation_id, **common)
            count = min(max(request.num_images, 1), 4)
            images = [
                GeneratedImage(
                    url=f"{MOCK_IMAGE_BASE_URL}/{request.width}x{request.height}?text=mock+{i + 1}",
                    id=f"{generation_id}-{i}",
                    width=request.width,
                    height=request.height,
                )
                for i in range(count)
            ]
            return ImageGenerationResponse(images=images, generation_id=generation_id, **common)

        raise AIError(
            f"Mock provider cannot handle {type(request).__name__}",
            AIErrorCode.INVALID_REQUEST,
            self.provider_type,
        )
