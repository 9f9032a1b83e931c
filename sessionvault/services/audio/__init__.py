"""
Audio module - Microphone capture and PCM utilities.
"""

from .capture import AudioCapture, AudioSource, calculate_stop_timeout
from .processor import AudioProcessor

__all__ = [
    "AudioCapture",
    "AudioProcessor",
    "AudioSource",
    "calculate_stop_timeout",
    "create_audio_source",
]


def create_audio_source(provider: str = "sounddevice", **kwargs) -> AudioSource:
    """
    Factory function to create the platform recording primitive.

    Args:
        provider: Source name ("sounddevice")
        **kwargs: Source-specific configuration

    Returns:
        AudioSource implementation instance

    Raises:
        ValueError: If provider is unknown
    """
    if provider == "sounddevice":
        from .device import SoundDeviceSource

        return SoundDeviceSource(**kwargs)
    else:
        raise ValueError(f"Unknown audio source: {provider}")
