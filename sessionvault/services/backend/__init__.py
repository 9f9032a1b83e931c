"""
Backend module - Durable recordings backend abstraction layer.

Factory function for creating backend clients based on provider configuration.
"""

from .base import BaseRecordingBackend

__all__ = ["BaseRecordingBackend", "create_backend"]


def create_backend(provider: str = "http", **kwargs) -> BaseRecordingBackend:
    """
    Factory function to create a recordings backend client.

    Args:
        provider: Backend provider name ("http")
        **kwargs: Provider-specific configuration

    Returns:
        BaseRecordingBackend implementation instance

    Raises:
        ValueError: If provider is unknown
    """
    if provider == "http":
        from .http import HttpRecordingBackend

        return HttpRecordingBackend(**kwargs)
    else:
        raise ValueError(f"Unknown backend provider: {provider}")
