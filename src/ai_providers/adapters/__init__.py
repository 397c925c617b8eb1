"""Concrete AI provider adapters."""

from ai_providers.adapters.base import BaseProviderAdapter
from ai_providers.adapters.claude import ClaudeAdapter
from ai_providers.adapters.gemini import GeminiAdapter
from ai_providers.adapters.leonardo import GenerationStatus, LeonardoAdapter
from ai_providers.adapters.mock import MockAdapter

__all__ = [
    "BaseProviderAdapter",
    "ClaudeAdapter",
    "GeminiAdapter",
    "GenerationStatus",
    "LeonardoAdapter",
    "MockAdapter",
]
