"""AI provider layer: configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ai_providers.types import Capability, ProviderType


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _parse_chain(value: str) -> list[ProviderType]:
    return [ProviderType(name.strip().lower()) for name in value.split(",") if name.strip()]


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_env: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    json_logs: bool = False

    # ── Credentials ──────────────────────────────────────────
    anthropic_api_key: str = ""
    google_ai_api_key: str = ""
    leonardo_api_key: str = ""

    # ── Models ───────────────────────────────────────────────
    claude_model: str = "claude-sonnet-4-5-20250929"
    gemini_text_model: str = "gemini-3-flash-preview"
    gemini_vision_model: str = "gemini-3-flash-preview"
    leonardo_model_id: str = "de7d3faf-762f-48e0-b3b7-9d0ac3a3fcf3"

    # ── Timeouts (seconds) ───────────────────────────────────
    text_timeout_seconds: float = 60.0
    image_timeout_seconds: float = 120.0

    # ── Cache ────────────────────────────────────────────────
    cache_enabled: bool = True
    cache_max_size: int = 500
    cache_ttl_seconds: float = 300.0

    # ── Rate limits (requests per minute) ────────────────────
    claude_rpm: int = 50
    gemini_rpm: int = 60
    leonardo_rpm: int = 10

    # ── Circuit breaker ──────────────────────────────────────
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_cooldown_seconds: float = 30.0
    circuit_breaker_failure_window_seconds: float = 60.0

    # ── Retry ────────────────────────────────────────────────
    retry_max_retries: int = 3
    retry_initial_delay_ms: float = 1000.0
    retry_max_delay_ms: float = 30_000.0
    retry_backoff_multiplier: float = 2.0

    # ── Fallback chains (comma-separated, in order) ──────────
    text_generation_fallbacks: str = "claude,gemini"
    vision_fallbacks: str = "gemini"
    image_generation_fallbacks: str = "leonardo"

    # None → enabled everywhere except production
    enable_mock_fallback: bool | None = None

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def mock_fallback_enabled(self) -> bool:
        if self.enable_mock_fallback is None:
            return not self.is_production
        return self.enable_mock_fallback

    def fallback_chains(self) -> dict[Capability, list[ProviderType]]:
        image_chain = _parse_chain(self.image_generation_fallbacks)
        return {
            Capability.TEXT_GENERATION: _parse_chain(self.text_generation_fallbacks),
            Capability.VISION: _parse_chain(self.vision_fallbacks),
            Capability.IMAGE_GENERATION: image_chain,
            Capability.TEXT_TO_IMAGE: list(image_chain),
        }

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator(
        "text_generation_fallbacks",
        "vision_fallbacks",
        "image_generation_fallbacks",
    )
    @classmethod
    def _validate_chain(cls, v: str) -> str:
        try:
            _parse_chain(v)
        except ValueError as exc:
            known = ", ".join(p.value for p in ProviderType)
            raise ValueError(f"unknown provider in fallback chain {v!r} (known: {known})") from exc
        return v

    @field_validator("cache_max_size", "circuit_breaker_failure_threshold")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def _guard_production_mock(self) -> Settings:
        """Canned mock responses must never reach production callers."""
        if self.is_production and self.enable_mock_fallback:
            raise ValueError("enable_mock_fallback cannot be true in production")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
