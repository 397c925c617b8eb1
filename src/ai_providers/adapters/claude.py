"""Anthropic Claude adapter (Messages API over httpx)."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ai_providers.adapters.base import BaseProviderAdapter
from ai_providers.context import ResilienceContext
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.types import (
    AIRequest,
    AIResponse,
    Capability,
    ProviderType,
    TextGenerationRequest,
    TextGenerationResponse,
)

logger = structlog.get_logger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 2000


class ClaudeAdapter(BaseProviderAdapter):
    display_name = "Claude"

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        context: ResilienceContext | None = None,
        timeout_s: float = 60.0,
        enable_cache: bool = True,
        cache_ttl_seconds: float = 300.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
        base_url: str = ANTHROPIC_API_URL,
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
        self._model = model
        self._default_max_tokens = default_max_tokens
        self._url = base_url

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.CLAUDE

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset({Capability.TEXT_GENERATION})

    @property
    def model(self) -> str:
        return self._model

    async def _dispatch(self, request: AIRequest) -> AIResponse:
        assert isinstance(request, TextGenerationRequest)
        return await self.generate_text(request)

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        max_tokens = request.max_tokens or self._default_max_tokens

        async def operation() -> tuple[str, dict[str, Any]]:
            return await self._call_with_retry(
                lambda: self._post_message(request, max_tokens),
                timeout_s=request.timeout_s,
            )

        def build(result: tuple[str, dict[str, Any]], request_id: str, latency_ms: float) -> TextGenerationResponse:
            text, raw_usage = result
            return TextGenerationResponse(
                request_id=request_id,
                provider=self.provider_type,
                latency_ms=latency_ms,
                text=text,
                usage=self._usage(
                    model=self._model,
                    input_tokens=raw_usage.get("input_tokens"),
                    output_tokens=raw_usage.get("output_tokens"),
                    raw=raw_usage,
                ),
            )

        return await self._run(
            request,
            operation=operation,
            build=build,
            model=self._model,
            cache_params={
                "system_prompt": request.system_prompt,
                "user_prompt": request.user_prompt,
                "max_tokens": max_tokens,
                "temperature": request.temperature,
            },
        )

    async def _post_message(
        self, request: TextGenerationRequest, max_tokens: int
    ) -> tuple[str, dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": request.user_prompt}],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.system_prompt:
            payload["system"] = request.system_prompt

        response = await self._client.post(
            self._url,
            json=payload,
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )
        self._raise_for_status(response)

        data = response.json()
        blocks = data.get("content") or []
        text = next(
            (b.get("text") for b in blocks if b.get("type") == "text" and b.get("text")),
            None,
        )
        if not text:
            raise AIError(
                "No text response from Claude",
                AIErrorCode.GENERATION_FAILED,
                self.provider_type,
            )
        logger.debug(
            "claude_message_completed",
            model=self._model,
            stop_reason=data.get("stop_reason"),
        )
        return text, data.get("usage") or {}
