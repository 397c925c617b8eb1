"""Leonardo.ai image generation adapter.

Generation is a two-step protocol: POST starts a job and returns a
generation id, then the job is polled until it completes or fails.  Only
the start call is retried; polling is bounded by ``max_poll_attempts``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
import structlog

from ai_providers.adapters.base import BaseProviderAdapter
from ai_providers.context import ResilienceContext
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.types import (
    AIRequest,
    AIResponse,
    AsyncImageGenerationResponse,
    Capability,
    GeneratedImage,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ProviderType,
)

logger = structlog.get_logger(__name__)

LEONARDO_API_BASE = "https://cloud.leonardo.ai/api/rest/v1"
DEFAULT_MODEL_ID = "de7d3faf-762f-48e0-b3b7-9d0ac3a3fcf3"
POLL_INTERVAL_SECONDS = 2.0
MAX_POLL_ATTEMPTS = 60
START_MAX_RETRIES = 2
MAX_PROMPT_LENGTH = 1500
MIN_DIMENSION = 32
MAX_DIMENSION = 1536
MAX_IMAGES = 4


@dataclass
class GenerationStatus:
    """Result of a single poll: ``pending``, ``complete`` or ``failed``."""

    status: str
    images: list[GeneratedImage] = field(default_factory=list)
    error: str | None = None


def normalize_dimension(value: int) -> int:
    """Round down to a multiple of 8 within the accepted range."""
    return max(MIN_DIMENSION, min(MAX_DIMENSION, (value // 8) * 8))


def truncate_prompt(prompt: str, limit: int = MAX_PROMPT_LENGTH) -> str:
    if len(prompt) <= limit:
        return prompt
    cut = prompt[:limit]
    # prefer ending on a word boundary
    space = cut.rfind(" ")
    return cut[:space] if space > limit // 2 else cut


class LeonardoAdapter(BaseProviderAdapter):
    display_name = "Leonardo"

    def __init__(
        self,
        *,
        api_key: str = "",
        model_id: str = DEFAULT_MODEL_ID,
        style_id: str | None = None,
        context: ResilienceContext | None = None,
        timeout_s: float = 120.0,
        max_retries: int = START_MAX_RETRIES,
        poll_interval_s: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        client: httpx.AsyncClient | None = None,
        base_url: str = LEONARDO_API_BASE,
    ) -> None:
        # Generated image URLs are one-off; responses are never cached
        super().__init__(
            api_key=api_key,
            context=context,
            timeout_s=timeout_s,
            enable_cache=False,
            max_retries=max_retries,
            client=client,
        )
        self._model_id = model_id
        self._style_id = style_id
        self._poll_interval_s = poll_interval_s
        self._max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self._base_url = base_url.rstrip("/")

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.LEONARDO

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset({Capability.IMAGE_GENERATION, Capability.TEXT_TO_IMAGE})

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self._api_key}",
            "accept": "application/json",
            "content-type": "application/json",
        }

    async def _dispatch(self, request: AIRequest) -> AIResponse:
        assert isinstance(request, ImageGenerationRequest)
        if request.async_mode:
            return await self.start_generation(request)
        return await self.generate_images(request)

    # ── Public operations ────────────────────────────────────
    async def generate_images(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Start a generation and wait for its images."""
        width = normalize_dimension(request.width)
        height = normalize_dimension(request.height)
        num_images = min(max(request.num_images, 1), MAX_IMAGES)

        async def operation() -> tuple[str, list[GeneratedImage]]:
            generation_id = await self._start(request, width, height, num_images)
            images = await self._poll(generation_id, width, height)
            return generation_id, images

        def build(
            result: tuple[str, list[GeneratedImage]], request_id: str, latency_ms: float
        ) -> ImageGenerationResponse:
            generation_id, images = result
            return ImageGenerationResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                images=images,
                generation_id=generation_id,
                usage=self._usage(model=self._model_id, image_count=len(images)),
            )

        return await self._run(request, operation=operation, build=build, model=self._model_id)

    async def start_generation(self, request: ImageGenerationRequest) -> AsyncImageGenerationResponse:
        """Start a generation and return immediately; poll with ``check_generation``."""
        width = normalize_dimension(request.width)
        height = normalize_dimension(request.height)
        num_images = min(max(request.num_images, 1), MAX_IMAGES)

        async def operation() -> str:
            return await self._start(request, width, height, num_images)

        def build(generation_id: str, request_id: str, latency_ms: float) -> AsyncImageGenerationResponse:
            return AsyncImageGenerationResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                generation_id=generation_id,
            )

        return await self._run(request, operation=operation, build=build, model=self._model_id)

    async def check_generation(self, generation_id: str) -> GenerationStatus:
        """Single status poll; transport and API errors are reported as ``failed``."""
        try:
            response = await self._client.get(
                f"{self._base_url}/generations/{generation_id}",
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as exc:
            logger.warning("leonardo_poll_error", generation_id=generation_id, error=str(exc))
            return GenerationStatus(status="failed", error=str(exc))

        if not response.is_success:
            return GenerationStatus(
                status="failed", error=f"API error: {response.status_code} {response.reason_phrase}"
            )

        generation = response.json().get("generations_by_pk") or {}
        if generation.get("status") == "FAILED":
            return GenerationStatus(status="failed", error="Generation failed")

        raw_images = generation.get("generated_images") or []
        if raw_images:
            return GenerationStatus(
                status="complete",
                images=[
                    GeneratedImage(
                        url=img["url"],
                        id=img["id"],
                        width=img.get("width") or 0,
                        height=img.get("height") or 0,
                    )
                    for img in raw_images
                ],
            )
        return GenerationStatus(status="pending")

    # ── Internals ────────────────────────────────────────────
    async def _start(
        self, request: ImageGenerationRequest, width: int, height: int, num_images: int
    ) -> str:
        payload: dict[str, Any] = {
            "alchemy": False,
            "width": width,
            "height": height,
            "modelId": self._model_id,
            "prompt": truncate_prompt(request.prompt),
            "num_images": num_images,
        }
        if self._style_id:
            payload["styleUUID"] = self._style_id

        async def post() -> str:
            response = await self._client.post(
                f"{self._base_url}/generations", json=payload, headers=self._headers
            )
            self._raise_for_status(response)
            generation_id = (response.json().get("sdGenerationJob") or {}).get("generationId")
            if not generation_id:
                raise AIError(
                    "Failed to get generation ID from Leonardo API",
                    AIErrorCode.GENERATION_FAILED,
                    self.provider_type,
                )
            return generation_id

        generation_id = await self._call_with_retry(post, timeout_s=request.timeout_s)
        logger.info("leonardo_generation_started", generation_id=generation_id, num_images=num_images)
        return generation_id

    async def _poll(self, generation_id: str, width: int, height: int) -> list[GeneratedImage]:
        for _ in range(self._max_poll_attempts):
            result = await self.check_generation(generation_id)
            if result.status == "complete":
                return [
                    GeneratedImage(
                        url=img.url,
                        id=img.id,
                        width=img.width or width,
                        height=img.height or height,
                    )
                    for img in result.images
                ]
            if result.status == "failed":
                raise AIError(
                    result.error or "Generation failed",
                    AIErrorCode.GENERATION_FAILED,
                    self.provider_type,
                )
            await self._sleep(self._poll_interval_s)

        raise AIError(
            f"Generation timed out after {self._max_poll_attempts * self._poll_interval_s:.0f} seconds",
            AIErrorCode.TIMEOUT,
            self.provider_type,
            retryable=True,
        )
