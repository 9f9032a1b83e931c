"""Microphone capture state machine.

``AudioCapture`` drives an ``AudioSource`` (the platform recording
primitive) and buffers the chunks it delivers. Stopping waits for the
source to flush its final chunk before the blob is assembled; if the
flush takes longer than an adaptive timeout the blob is built from what
was already buffered and flagged as partial.

States::

    idle -> starting -> recording <-> paused -> stopping -> stopped
    recording | paused -(cancel)-> idle
    any device failure -> error
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import (
    DeviceUnavailableError,
    RecorderStateError,
    RecordingAlreadyActiveError,
)
from sessionvault.core.models import AudioBlob, CaptureResult, CapturedChunk, RecorderStatus

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


def device_error_message(raw: str) -> str:
    """Turn a platform error string into the message shown to the clinician."""
    lowered = raw.lower()
    if "permission denied" in lowered or "notallowed" in lowered:
        return "Доступ к микрофону запрещен. Пожалуйста, разрешите доступ в настройках."
    if "not found" in lowered or "no default input device" in lowered or "invalid device" in lowered:
        return "Микрофон не найден. Убедитесь, что микрофон подключен."
    return f"Ошибка доступа к микрофону: {raw}"


def calculate_stop_timeout(
    duration_seconds: float,
    base_seconds: float = 30.0,
    slow_host: bool | None = None,
) -> float:
    """How long ``stop()`` waits for the final chunk.

    Base timeout, x1.5 on slow hosts, plus 10 s (scaled the same way) per
    recorded hour; clamped to ``[base, 4 * base]``.
    """
    if slow_host is None:
        slow_host = (os.cpu_count() or 4) <= 2
    multiplier = 1.5 if slow_host else 1.0
    per_hour = base_seconds / 3 * multiplier
    timeout = base_seconds * multiplier + (duration_seconds / 3600) * per_hour
    return max(base_seconds, min(timeout, base_seconds * 4))


class AudioSource(ABC):
    """Platform recording primitive consumed by ``AudioCapture``.

    Chunks and asynchronous device errors are delivered through the
    callbacks passed to ``open()`` on the event-loop thread.
    """

    @property
    @abstractmethod
    def mime_type(self) -> str:
        """Container type of the encoded stream."""

    @property
    def level(self) -> float:
        """Most recent input level in [0, 1]."""
        return 0.0

    @abstractmethod
    async def open(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:
        """Acquire the device and start delivering chunks.

        Raises:
            DeviceUnavailableError: Permission denied or no input device.
        """

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> None: ...

    @abstractmethod
    async def flush(self) -> None:
        """Deliver any buffered audio; returns after the final chunk callback."""

    @abstractmethod
    async def close(self) -> None:
        """Release the device. Safe to call more than once."""

    def encode(self, chunks: list[bytes]) -> bytes:
        """Join chunk payloads into one playable file."""
        return b"".join(chunks)


class AudioCapture:
    """Records from an ``AudioSource`` and hands back a blob on stop.

    Args:
        source: Platform recording primitive.
        settings: Application settings (stop timeout base, duration cap).
        clock: Monotonic time source in seconds.
        max_duration_seconds: Drop audio past this length and flag the result
            partial. Falls back to ``settings.max_recording_seconds``.
    """

    def __init__(
        self,
        source: AudioSource,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_duration_seconds: float | None = None,
    ) -> None:
        self._source = source
        self._settings = settings or get_settings()
        self._clock = clock
        self._max_duration = (
            max_duration_seconds
            if max_duration_seconds is not None
            else self._settings.max_recording_seconds
        )
        self._status = RecorderStatus.idle
        self._chunks: list[CapturedChunk] = []
        self._accumulated = 0.0
        self._segment_started: float | None = None
        self._capped = False
        self._source_open = False
        self.error: str | None = None
        self.was_partial_save = False
        self._error_listeners: list[Callable[[str], None]] = []

    # -- state --

    @property
    def status(self) -> RecorderStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in (
            RecorderStatus.starting,
            RecorderStatus.recording,
            RecorderStatus.paused,
            RecorderStatus.stopping,
        )

    @property
    def duration_seconds(self) -> float:
        """Sum of recording intervals; paused time is excluded."""
        if self._segment_started is None:
            return self._accumulated
        return self._accumulated + (self._clock() - self._segment_started)

    @property
    def input_level(self) -> float:
        return self._source.level if self._status == RecorderStatus.recording else 0.0

    def get_current_chunks(self) -> tuple[CapturedChunk, ...]:
        """Snapshot of the buffered chunks; recording continues unaffected."""
        return tuple(self._chunks)

    def get_current_mime_type(self) -> str:
        return self._source.mime_type

    def encode_chunks(self, chunks: tuple[CapturedChunk, ...] | list[CapturedChunk]) -> AudioBlob:
        """Build a playable blob from a chunk snapshot."""
        ordered = sorted(chunks, key=lambda c: c.sequence)
        return AudioBlob(
            data=self._source.encode([c.data for c in ordered]),
            mime_type=self._source.mime_type,
        )

    def add_error_listener(self, listener: Callable[[str], None]) -> None:
        self._error_listeners.append(listener)

    # -- transport controls --

    async def start(self) -> None:
        """Acquire the device and begin recording.

        Raises:
            RecordingAlreadyActiveError: A recording is in progress.
            DeviceUnavailableError: The microphone cannot be opened.
        """
        if self.is_active:
            raise RecordingAlreadyActiveError()
        await self._close_source()

        self._status = RecorderStatus.starting
        self._chunks = []
        self._accumulated = 0.0
        self._segment_started = None
        self._capped = False
        self.error = None
        self.was_partial_save = False

        try:
            await self._source.open(self._on_chunk, self._on_device_error)
        except DeviceUnavailableError as exc:
            self._fail(exc.detail)
            raise
        except Exception as exc:
            logger.exception("Error starting recording")
            message = device_error_message(str(exc))
            self._fail(message)
            raise DeviceUnavailableError(message) from exc

        self._source_open = True
        self._segment_started = self._clock()
        self._status = RecorderStatus.recording
        logger.info("Recording started (%s)", self._source.mime_type)

    def pause(self) -> None:
        if self._status != RecorderStatus.recording:
            raise RecorderStateError("pause", self._status)
        self._source.pause()
        self._close_segment()
        self._status = RecorderStatus.paused

    def resume(self) -> None:
        if self._status != RecorderStatus.paused:
            raise RecorderStateError("resume", self._status)
        self._source.resume()
        self._segment_started = self._clock()
        self._status = RecorderStatus.recording

    async def stop(self) -> CaptureResult:
        """Flush the device, then assemble the blob from every chunk.

        Returns:
            CaptureResult whose ``partial`` flag is set when the flush timed
            out, the duration cap was hit, the device had failed, or nothing
            was captured.
        """
        if self._status not in (
            RecorderStatus.recording,
            RecorderStatus.paused,
            RecorderStatus.error,
        ):
            raise RecorderStateError("stop", self._status)

        failed = self._status == RecorderStatus.error
        self._close_segment()
        duration = self._accumulated
        self._status = RecorderStatus.stopping
        partial = self._capped or failed

        if failed:
            # The device is gone; keep what arrived before the failure
            await self._close_source()
        else:
            timeout = calculate_stop_timeout(duration, self._settings.stop_timeout_base_seconds)
            try:
                await asyncio.wait_for(self._source.flush(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "Stop timed out after %.0fs; saving %d buffered chunk(s) as partial",
                    timeout,
                    len(self._chunks),
                )
                partial = True
            except Exception:
                logger.exception("Device flush failed; saving buffered chunks as partial")
                partial = True
            finally:
                await self._close_source()

        if self._chunks:
            blob = self.encode_chunks(self._chunks)
        else:
            logger.warning("Stop produced no audio chunks")
            blob = None
            partial = True

        self._status = RecorderStatus.stopped
        self.was_partial_save = partial
        logger.info(
            "Recording stopped: %.1fs, %d bytes%s",
            duration,
            blob.size if blob else 0,
            " (partial)" if partial else "",
        )
        return CaptureResult(blob=blob, duration_seconds=duration, partial=partial)

    async def cancel(self) -> None:
        """Discard everything captured and return to idle."""
        self._chunks = []
        self._segment_started = None
        self._accumulated = 0.0
        await self._close_source()
        self._status = RecorderStatus.idle
        logger.info("Recording cancelled; buffered audio discarded")

    async def reset(self) -> None:
        """Return a stopped or failed recorder to idle, releasing the device."""
        if self.is_active:
            raise RecorderStateError("reset", self._status)
        await self._close_source()
        self._chunks = []
        self._accumulated = 0.0
        self._segment_started = None
        self._status = RecorderStatus.idle

    # -- internals --

    def _close_segment(self) -> None:
        if self._segment_started is not None:
            self._accumulated += self._clock() - self._segment_started
            self._segment_started = None

    def _on_chunk(self, data: bytes) -> None:
        if not data or self._status not in (
            RecorderStatus.recording,
            RecorderStatus.paused,
            RecorderStatus.stopping,
        ):
            return
        if self._max_duration is not None and self.duration_seconds > self._max_duration:
            if not self._capped:
                logger.warning("Maximum recording length reached; further audio is dropped")
            self._capped = True
            return
        self._chunks.append(
            CapturedChunk(data=data, mime_type=self._source.mime_type, sequence=len(self._chunks))
        )

    def _on_device_error(self, exc: Exception) -> None:
        logger.error("Audio device error: %s", exc)
        self._close_segment()
        self._fail(device_error_message(str(exc)))

    def _fail(self, message: str) -> None:
        self._status = RecorderStatus.error
        self.error = message
        for listener in list(self._error_listeners):
            try:
                listener(message)
            except Exception:
                logger.warning("Capture error listener failed (non-fatal)")

    async def _close_source(self) -> None:
        if not self._source_open:
            return
        self._source_open = False
        try:
            await self._source.close()
        except Exception:
            logger.exception("Failed to release audio device")
