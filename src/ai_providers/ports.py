"""Adapter port: what the orchestrator needs from a concrete AI provider.

The orchestrator depends only on this abstraction, never on the HTTP
details of a particular vendor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ai_providers.types import (
    AIRequest,
    AIResponse,
    Capability,
    ProviderType,
    RateLimitStatus,
)


class AIProviderPort(ABC):
    """A single AI vendor behind a uniform ``execute`` call."""

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType: ...

    @property
    @abstractmethod
    def capabilities(self) -> frozenset[Capability]: ...

    @abstractmethod
    def is_available(self) -> bool:
        """True when the provider is configured (credentials present)."""

    @abstractmethod
    async def execute(self, request: AIRequest) -> AIResponse:
        """Serve ``request`` or raise ``AIError``."""

    @abstractmethod
    def get_rate_limit_status(self) -> RateLimitStatus: ...

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
