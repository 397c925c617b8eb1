"""AI provider error taxonomy.

Every failure that crosses the adapter boundary is an ``AIError``.  The
``code`` and ``retryable`` flag are the only inputs the retry executor and
the orchestrator use to decide what happens next.
"""

from __future__ import annotations

import enum
from typing import Any

from ai_providers.types import ProviderType, provider_key


class AIErrorCode(str, enum.Enum):
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    GENERATION_FAILED = "GENERATION_FAILED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_STATUS_CODES: dict[int, AIErrorCode] = {
    400: AIErrorCode.INVALID_REQUEST,
    401: AIErrorCode.AUTHENTICATION_FAILED,
    402: AIErrorCode.INSUFFICIENT_QUOTA,
    403: AIErrorCode.CONTENT_FILTERED,
    429: AIErrorCode.RATE_LIMITED,
}


class AIError(Exception):
    """A classified provider failure.

    Attributes:
        message:        Human-readable description.
        code:           Taxonomy code (see ``AIErrorCode``).
        provider:       Provider identifier that produced the error.
        status_code:    HTTP status, when the error came from a response.
        retryable:      Whether the failure is considered transient.
        retry_after_ms: Server- or limiter-specified wait before retrying.
    """

    def __init__(
        self,
        message: str,
        code: AIErrorCode,
        provider: ProviderType | str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        retry_after_ms: float | None = None,
    ) -> None:
        self.message = message
        self.code = AIErrorCode(code)
        self.provider = provider_key(provider)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        super().__init__(message)

    @classmethod
    def from_status(
        cls,
        status_code: int,
        message: str,
        provider: ProviderType | str,
        *,
        retry_after_ms: float | None = None,
    ) -> AIError:
        """Classify an HTTP error response."""
        if status_code >= 500:
            code = AIErrorCode.NETWORK_ERROR
        else:
            code = _STATUS_CODES.get(status_code, AIErrorCode.UNKNOWN_ERROR)
        return cls(
            message,
            code,
            provider,
            status_code=status_code,
            retryable=status_code == 429 or status_code >= 500,
            retry_after_ms=retry_after_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "provider": self.provider,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
        }

    def __repr__(self) -> str:
        return (
            f"AIError(code={self.code.value!r}, provider={self.provider!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )
