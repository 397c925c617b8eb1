"""Google Gemini adapter (generateContent REST API over httpx).

Handles text generation and vision (single and multi-image).  Image inputs
arrive as base64 data URLs and are sent as ``inline_data`` parts.
"""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any

import httpx
import structlog

from ai_providers.adapters.base import BaseProviderAdapter
from ai_providers.context import ResilienceContext
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.types import (
    AIRequest,
    AIResponse,
    AIUsage,
    Capability,
    MultiImageVisionRequest,
    ProviderType,
    TextGenerationRequest,
    TextGenerationResponse,
    VisionRequest,
    VisionResponse,
)

logger = structlog.get_logger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-3-flash-preview"
DEFAULT_MAX_TOKENS = 2048
TEXT_TEMPERATURE = 0.7
VISION_TEMPERATURE = 0.3

# Rough token estimate when the API omits usage metadata
CHARS_PER_TOKEN = 4
IMAGE_CHAR_ALLOWANCE = 1000

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"})


def hash_image_data(data_url: str) -> str:
    """Stable digest of an image payload for cache keys."""
    return hashlib.sha256(data_url.encode("utf-8")).hexdigest()


class GeminiAdapter(BaseProviderAdapter):
    display_name = "Gemini"

    def __init__(
        self,
        *,
        api_key: str = "",
        text_model: str = DEFAULT_MODEL,
        vision_model: str = DEFAULT_MODEL,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        context: ResilienceContext | None = None,
        timeout_s: float = 60.0,
        enable_cache: bool = True,
        cache_ttl_seconds: float = 300.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
        base_url: str = GEMINI_API_BASE,
    ) -> None:
        super().__init__(
            api_key=api_key,
            context=context,
            timeout_s=timeout_s,
            enable_cache=enable_cache,
            cache_ttl_seconds=cache_ttl_seconds,
            max_retries=max_retries,
            client=client,
        )
        self._text_model = text_model
        self._vision_model = vision_model
        self._default_max_tokens = default_max_tokens
        self._base_url = base_url.rstrip("/")

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GEMINI

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset({Capability.TEXT_GENERATION, Capability.VISION})

    async def _dispatch(self, request: AIRequest) -> AIResponse:
        if isinstance(request, TextGenerationRequest):
            return await self.generate_text(request)
        if isinstance(request, MultiImageVisionRequest):
            return await self.analyze_multiple_images(request)
        assert isinstance(request, VisionRequest)
        return await self.analyze_image(request)

    # ── Text ─────────────────────────────────────────────────
    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        max_tokens = request.max_tokens or self._default_max_tokens
        body = self._body(
            [{"text": request.user_prompt}],
            system=request.system_prompt,
            temperature=TEXT_TEMPERATURE if request.temperature is None else request.temperature,
            max_tokens=max_tokens,
        )

        async def operation() -> tuple[str, dict[str, Any]]:
            return await self._call_with_retry(
                lambda: self._generate_content(self._text_model, body),
                timeout_s=request.timeout_s,
            )

        def build(result: tuple[str, dict[str, Any]], request_id: str, latency_ms: float) -> TextGenerationResponse:
            text, meta = result
            return TextGenerationResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                text=text,
                usage=self._estimate_usage(self._text_model, meta, len(request.user_prompt), 0, text),
            )

        return await self._run(
            request,
            operation=operation,
            build=build,
            model=self._text_model,
            cache_params={
                "system_prompt": request.system_prompt,
                "user_prompt": request.user_prompt,
                "max_tokens": max_tokens,
                "temperature": request.temperature,
            },
        )

    # ── Vision ───────────────────────────────────────────────
    async def analyze_image(self, request: VisionRequest) -> VisionResponse:
        image_part = self._parse_image_data_url(request.image_data_url)
        max_tokens = request.max_tokens or self._default_max_tokens
        body = self._body(
            [image_part, {"text": request.prompt}],
            system=request.system_instruction,
            temperature=VISION_TEMPERATURE if request.temperature is None else request.temperature,
            max_tokens=max_tokens,
        )

        async def operation() -> tuple[str, dict[str, Any]]:
            return await self._call_with_retry(
                lambda: self._generate_content(self._vision_model, body),
                timeout_s=request.timeout_s,
            )

        def build(result: tuple[str, dict[str, Any]], request_id: str, latency_ms: float) -> VisionResponse:
            text, meta = result
            return VisionResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                text=text,
                usage=self._estimate_usage(self._vision_model, meta, len(request.prompt), 1, text),
            )

        return await self._run(
            request,
            operation=operation,
            build=build,
            cache_namespace="gemini-vision",
            model=self._vision_model,
            cache_params={
                "image_hash": hash_image_data(request.image_data_url),
                "prompt": request.prompt,
                "system_instruction": request.system_instruction,
                "max_tokens": max_tokens,
                "temperature": request.temperature,
            },
        )

    async def analyze_multiple_images(self, request: MultiImageVisionRequest) -> VisionResponse:
        """Several images in one call; results are not cached."""
        if not request.image_data_urls:
            raise AIError(
                "At least one image is required for multi-image analysis",
                AIErrorCode.INVALID_REQUEST,
                self.provider_type,
            )
        parts: list[dict[str, Any]] = [self._parse_image_data_url(u) for u in request.image_data_urls]
        parts.append({"text": request.prompt})
        body = self._body(
            parts,
            system=request.system_instruction,
            temperature=VISION_TEMPERATURE if request.temperature is None else request.temperature,
            max_tokens=request.max_tokens or self._default_max_tokens,
        )
        image_count = len(request.image_data_urls)

        async def operation() -> tuple[str, dict[str, Any]]:
            return await self._call_with_retry(
                lambda: self._generate_content(self._vision_model, body),
                timeout_s=request.timeout_s,
            )

        def build(result: tuple[str, dict[str, Any]], request_id: str, latency_ms: float) -> VisionResponse:
            text, meta = result
            return VisionResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                text=text,
                usage=self._estimate_usage(
                    self._vision_model, meta, len(request.prompt), image_count, text
                ),
            )

        return await self._run(request, operation=operation, build=build, model=self._vision_model)

    # ── Wire ─────────────────────────────────────────────────
    @staticmethod
    def _body(
        parts: list[dict[str, Any]],
        *,
        system: str | None,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    async def _generate_content(self, model: str, body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        response = await self._client.post(
            f"{self._base_url}/models/{model}:generateContent",
            json=body,
            headers={"x-goog-api-key": self._api_key, "content-type": "application/json"},
        )
        self._raise_for_status(response)
        data = response.json()

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise AIError(
                f"Gemini blocked the prompt: {block_reason}",
                AIErrorCode.CONTENT_FILTERED,
                self.provider_type,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise AIError("No text response from Gemini", AIErrorCode.GENERATION_FAILED, self.provider_type)

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            finish_reason = candidate.get("finishReason")
            if finish_reason in _BLOCKED_FINISH_REASONS:
                raise AIError(
                    f"Gemini response filtered: {finish_reason}",
                    AIErrorCode.CONTENT_FILTERED,
                    self.provider_type,
                )
            raise AIError("No text response from Gemini", AIErrorCode.GENERATION_FAILED, self.provider_type)

        return text, data.get("usageMetadata") or {}

    def _parse_image_data_url(self, data_url: str) -> dict[str, Any]:
        match = _DATA_URL.match(data_url)
        if match is None:
            raise AIError(
                "Invalid image data URL format",
                AIErrorCode.INVALID_REQUEST,
                self.provider_type,
            )
        mime_type, data = match.groups()
        return {"inline_data": {"mime_type": mime_type, "data": data}}

    def _estimate_usage(
        self,
        model: str,
        meta: dict[str, Any],
        prompt_chars: int,
        image_count: int,
        text: str,
    ) -> AIUsage:
        input_tokens = meta.get("promptTokenCount")
        output_tokens = meta.get("candidatesTokenCount")
        if input_tokens is None:
            input_tokens = math.ceil((prompt_chars + image_count * IMAGE_CHAR_ALLOWANCE) / CHARS_PER_TOKEN)
        if output_tokens is None:
            output_tokens = math.ceil(len(text) / CHARS_PER_TOKEN)
        return self._usage(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw=meta or None,
        )
