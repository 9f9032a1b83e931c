"""Default microphone source backed by PortAudio via ``sounddevice``.

Captures 16-bit PCM in fixed-size blocks (one chunk per
``settings.chunk_seconds``) and wraps the concatenated PCM in a WAV
container when the recording is assembled.
"""

import asyncio
import logging

import sounddevice as sd

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import DeviceUnavailableError
from sessionvault.services.audio.capture import (
    AudioSource,
    ChunkCallback,
    ErrorCallback,
    device_error_message,
)
from sessionvault.services.audio.processor import AudioProcessor

logger = logging.getLogger(__name__)


class SoundDeviceSource(AudioSource):
    """Input stream on the default (or named) PortAudio device.

    PortAudio invokes the stream callback on its own thread; chunks are
    handed to the event loop with ``call_soon_threadsafe``.
    """

    def __init__(self, settings: Settings | None = None, device: str | int | None = None) -> None:
        self._settings = settings or get_settings()
        self._device = device
        self._processor = AudioProcessor(
            sample_rate=self._settings.sample_rate,
            sample_width=2,
            channels=self._settings.channels,
        )
        self._stream: sd.RawInputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_chunk: ChunkCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._paused = False
        self._closing = False
        self._level = 0.0

    @property
    def mime_type(self) -> str:
        return "audio/wav"

    @property
    def level(self) -> float:
        return self._level

    async def open(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:
        self._loop = asyncio.get_running_loop()
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._paused = False
        self._closing = False
        try:
            sd.query_devices(self._device, kind="input")
            self._stream = sd.RawInputStream(
                samplerate=self._settings.sample_rate,
                channels=self._settings.channels,
                dtype="int16",
                blocksize=int(self._settings.sample_rate * self._settings.chunk_seconds),
                device=self._device,
                callback=self._callback,
                finished_callback=self._finished,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise DeviceUnavailableError(device_error_message(str(exc))) from exc
        logger.info(
            "Opened input device %s at %d Hz, %d channel(s)",
            self._device if self._device is not None else "default",
            self._settings.sample_rate,
            self._settings.channels,
        )

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        if self._paused or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._deliver, bytes(indata))

    def _deliver(self, data: bytes) -> None:
        self._level = self._processor.rms_level(data)
        if self._on_chunk is not None:
            self._on_chunk(data)

    def _finished(self) -> None:
        if self._closing or self._loop is None or self._on_error is None:
            return
        self._loop.call_soon_threadsafe(
            self._on_error, DeviceUnavailableError("Audio input stream ended unexpectedly")
        )

    def pause(self) -> None:
        self._paused = True
        self._level = 0.0

    def resume(self) -> None:
        self._paused = False

    async def flush(self) -> None:
        if self._stream is None:
            return
        self._closing = True
        # stop() blocks until PortAudio has drained the pending buffers
        await asyncio.to_thread(self._stream.stop)
        await asyncio.sleep(0)

    async def close(self) -> None:
        self._closing = True
        stream, self._stream = self._stream, None
        if stream is not None:
            await asyncio.to_thread(stream.close)
        self._level = 0.0

    def encode(self, chunks: list[bytes]) -> bytes:
        pcm = b"".join(chunks)
        logger.debug("Encoding %.1fs of PCM into WAV", self._processor.duration_seconds(pcm))
        return self._processor.to_wav_bytes(pcm)
