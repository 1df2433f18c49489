"""External service integrations."""

from .generation import GenerationClient

__all__ = ["GenerationClient"]
