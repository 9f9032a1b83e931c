"""Shared pytest fixtures for the SessionVault test suite.

Provides a hand-driven scheduler, a fake microphone, a mocked recordings
backend, and a file-backed SQLite local store under ``tmp_path``.
"""

import asyncio
import itertools
import math
import struct
from unittest.mock import AsyncMock

import pytest

from sessionvault.core.config import Settings
from sessionvault.core.models import (
    RemoteRecording,
    TranscriptionStatus,
    TranscriptionStatusResult,
    UserContext,
)
from sessionvault.core.scheduler import Scheduler, TimerHandle
from sessionvault.services.audio.capture import AudioSource

# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class ManualScheduler(Scheduler):
    """Virtual clock: timers fire only when the test calls ``advance()``.

    ``sleep()`` records the requested delay and moves virtual time forward
    without waiting.
    """

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = itertools.count()
        self._timers: list[tuple[float, int, TimerHandle, object]] = []
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback) -> TimerHandle:
        handle = TimerHandle()
        self._timers.append((self._now + max(delay, 0.0), next(self._seq), handle, callback))
        return handle

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self._now += delay
        await asyncio.sleep(0)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t[2].cancelled)

    async def advance(self, seconds: float = 0.0) -> None:
        """Move time forward, firing due callbacks in order."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t[2].cancelled and t[0] <= target]
            if not due:
                break
            entry = min(due, key=lambda t: (t[0], t[1]))
            self._timers.remove(entry)
            self._now = max(self._now, entry[0])
            await entry[3]()
        self._now = max(self._now, target)
        self._timers = [t for t in self._timers if not t[2].cancelled]


@pytest.fixture
def scheduler():
    return ManualScheduler()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from any .env file, with a tmp data directory."""
    return Settings(
        _env_file=None,
        backend_url="http://backend.test",
        backend_api_key="test-key",
        transcription_api_url="http://transcribe.test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'local.db'}",
        data_dir=str(tmp_path),
        stop_timeout_base_seconds=0.05,
    )


@pytest.fixture
def user():
    return UserContext(user_id="user-1", clinic_id="clinic-1")


# ---------------------------------------------------------------------------
# Audio Fixtures
# ---------------------------------------------------------------------------


class FakeAudioSource(AudioSource):
    """In-memory microphone; tests push chunks with ``emit()``."""

    def __init__(self, mime_type: str = "audio/webm;codecs=opus") -> None:
        self._mime_type = mime_type
        self.open_error: Exception | None = None
        self.final_chunk: bytes | None = None
        self.hang_on_flush = False
        self.is_open = False
        self.paused = False
        self.closed = 0
        self._on_chunk = None
        self._on_error = None

    @property
    def mime_type(self) -> str:
        return self._mime_type

    async def open(self, on_chunk, on_error) -> None:
        if self.open_error is not None:
            raise self.open_error
        self._on_chunk = on_chunk
        self._on_error = on_error
        self.is_open = True

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    async def flush(self) -> None:
        if self.hang_on_flush:
            await asyncio.Event().wait()
        if self.final_chunk is not None:
            self.emit(self.final_chunk)

    async def close(self) -> None:
        self.is_open = False
        self.closed += 1

    def emit(self, data: bytes) -> None:
        self._on_chunk(data)

    def fail(self, exc: Exception) -> None:
        self._on_error(exc)


@pytest.fixture
def audio_source():
    return FakeAudioSource()


@pytest.fixture
def sample_pcm_bytes():
    """1 second of 440Hz sine-wave PCM audio (16kHz, 16-bit, mono)."""
    sample_rate = 16000
    amplitude = 16000  # ~50% of max int16
    return b"".join(
        struct.pack("<h", int(amplitude * math.sin(2 * math.pi * 440.0 * i / sample_rate)))
        for i in range(sample_rate)
    )


@pytest.fixture
def silent_pcm_bytes():
    """1 second of silence as PCM audio (16kHz, 16-bit, mono)."""
    return b"\x00\x00" * 16000


# ---------------------------------------------------------------------------
# Backend Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend():
    """Mock recordings backend with a happy-path default for every call.

    Recording ids are handed out as ``rec-1``, ``rec-2``, ... so tests can
    count how many remote rows were created.
    """
    from sessionvault.services.backend.base import BaseRecordingBackend

    mock = AsyncMock(spec=BaseRecordingBackend)
    counter = itertools.count(1)

    async def _create_record(session_id, user_id, file_name):
        return RemoteRecording(id=f"rec-{next(counter)}", session_id=session_id, file_name=file_name)

    mock.create_session.return_value = "session-new"
    mock.create_recording_record.side_effect = _create_record
    mock.upload_audio_blob.return_value = "recordings/rec/file.webm"
    mock.update_recording_duration.return_value = None
    mock.start_transcription.return_value = None
    mock.sync_transcription_status.return_value = None
    mock.get_transcription_status.return_value = TranscriptionStatusResult(
        status=TranscriptionStatus.processing
    )
    mock.list_processing_recordings.return_value = []
    mock.check_connection.return_value = True
    return mock


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine(settings):
    """File-backed SQLite async engine with tables, disposed after the test."""
    from sessionvault.services.storage.database import build_engine, init_db

    engine = build_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sessionvault.services.storage.database import get_session_factory

    return get_session_factory(db_engine)


class FakeClock:
    """Epoch-ms clock the test can move forward."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms


@pytest.fixture
def wall_clock():
    return FakeClock()


@pytest.fixture
def store(session_factory, settings, wall_clock):
    """LocalRecordingStore with plenty of free disk space."""
    from sessionvault.services.storage.repository import LocalRecordingStore

    return LocalRecordingStore(
        session_factory,
        settings=settings,
        clock=wall_clock,
        free_space=lambda: 10 * 1024**3,
    )


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def capture(audio_source, settings, scheduler):
    from sessionvault.services.audio.capture import AudioCapture

    return AudioCapture(audio_source, settings=settings, clock=scheduler.now)


@pytest.fixture
def upload_queue(backend, store, scheduler, settings, user):
    from sessionvault.services.upload.queue import UploadQueue

    queue = UploadQueue(backend, store, scheduler, settings=settings)
    queue.init(user)
    return queue


@pytest.fixture
def recovery(backend, scheduler, settings):
    from sessionvault.services.transcription.recovery import TranscriptionRecovery

    return TranscriptionRecovery(backend, scheduler, settings=settings)


@pytest.fixture
def breadcrumbs(tmp_path):
    from sessionvault.services.lifecycle import BreadcrumbStore

    return BreadcrumbStore(tmp_path)


@pytest.fixture
def orchestrator(capture, store, upload_queue, recovery, backend, scheduler, breadcrumbs, settings):
    from sessionvault.services.orchestrator import SessionRecordingOrchestrator

    return SessionRecordingOrchestrator(
        capture,
        store,
        upload_queue,
        recovery,
        backend,
        scheduler,
        breadcrumbs,
        settings=settings,
    )
