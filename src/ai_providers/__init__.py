"""Resilient multi-provider AI access.

Routes text generation, vision and image generation requests across
Claude, Gemini and Leonardo with caching, rate limiting, circuit breaking,
retries and cost tracking.
"""

from ai_providers.config import Settings, get_settings
from ai_providers.context import (
    ResilienceContext,
    create_context,
    get_default_context,
    reset_default_context,
)
from ai_providers.errors import AIError, AIErrorCode
from ai_providers.orchestrator import (
    UnifiedProvider,
    analyze_image,
    build_unified_provider,
    generate_images,
    generate_text,
    get_unified_provider,
    reset_unified_provider,
)
from ai_providers.ports import AIProviderPort
from ai_providers.types import (
    AIMetrics,
    AIUsage,
    AsyncImageGenerationResponse,
    Capability,
    GeneratedImage,
    ImageGenerationRequest,
    ImageGenerationResponse,
    MultiImageVisionRequest,
    ProviderMetrics,
    ProviderType,
    TextGenerationRequest,
    TextGenerationResponse,
    VisionRequest,
    VisionResponse,
)

__all__ = [
    "AIError",
    "AIErrorCode",
    "AIMetrics",
    "AIProviderPort",
    "AIUsage",
    "AsyncImageGenerationResponse",
    "Capability",
    "GeneratedImage",
    "ImageGenerationRequest",
    "ImageGenerationResponse",
    "MultiImageVisionRequest",
    "ProviderMetrics",
    "ProviderType",
    "ResilienceContext",
    "Settings",
    "TextGenerationRequest",
    "TextGenerationResponse",
    "UnifiedProvider",
    "VisionRequest",
    "VisionResponse",
    "analyze_image",
    "build_unified_provider",
    "create_context",
    "generate_images",
    "generate_text",
    "get_default_context",
    "get_settings",
    "get_unified_provider",
    "reset_default_context",
    "reset_unified_provider",
]
