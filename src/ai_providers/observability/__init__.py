"""Logging and metrics wiring."""

from ai_providers.observability.logging_config import configure_logging

__all__ = ["configure_logging"]
