"""Audio processing utilities for PCM data.

Wraps raw PCM captured from the microphone into an uploadable WAV
container and measures input level for the recorder's meter.
"""

import io
import wave

import numpy as np


class AudioProcessor:
    """PCM helpers bound to one capture format.

    The sample format is fixed per instance so the device source and the
    level meter agree on frame size.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        sample_width: int = 2,
        channels: int = 1,
    ) -> None:
        """Initialize the audio processor.

        Args:
            sample_rate: Audio sample rate in Hz (default: 16 kHz).
            sample_width: Bytes per sample (2 = 16-bit signed PCM).
            channels: Number of audio channels (1 = mono).
        """
        self.sample_rate = sample_rate
        self.sample_width = sample_width
        self.channels = channels

    def pcm_to_ndarray(self, pcm_data: bytes) -> np.ndarray:
        """Decode 16-bit PCM into float32 samples in [-1.0, 1.0].

        Raises:
            ValueError: If the buffer ends mid-frame.
        """
        frame_size = self.sample_width * self.channels
        if len(pcm_data) % frame_size != 0:
            raise ValueError(
                f"PCM data length ({len(pcm_data)}) is not aligned to frame size ({frame_size})"
            )
        return np.frombuffer(pcm_data, dtype=np.int16).astype(np.float32) / 32768.0

    def to_wav_bytes(self, pcm_data: bytes) -> bytes:
        """Pack raw PCM bytes into an in-memory WAV file.

        Args:
            pcm_data: Raw PCM bytes (16-bit).

        Returns:
            Complete WAV file contents (header + frames).
        """
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(self.channels)
            wf.setsampwidth(self.sample_width)
            wf.setframerate(self.sample_rate)
            wf.writeframes(pcm_data)
        return buf.getvalue()

    def duration_seconds(self, pcm_data: bytes) -> float:
        """Playback length of a PCM buffer."""
        return len(pcm_data) / (self.sample_rate * self.sample_width * self.channels)

    def rms_level(self, pcm_data: bytes) -> float:
        """RMS energy of a PCM chunk in [0.0, 1.0]; 0.0 for empty input."""
        if not pcm_data:
            return 0.0
        audio = self.pcm_to_ndarray(pcm_data)
        if len(audio) == 0:
            return 0.0
        return float(np.sqrt(np.mean(audio**2)))
