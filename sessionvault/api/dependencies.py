"""
Service wiring for the control API.

``build_services()`` assembles the production object graph once per
process; routes reach it through ``get_orchestrator``.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.scheduler import AsyncioScheduler
from sessionvault.services.audio import create_audio_source
from sessionvault.services.audio.capture import AudioCapture
from sessionvault.services.backend import BaseRecordingBackend, create_backend
from sessionvault.services.lifecycle import BreadcrumbStore
from sessionvault.services.orchestrator import SessionRecordingOrchestrator
from sessionvault.services.storage.database import close_db, get_session_factory, init_db
from sessionvault.services.storage.repository import LocalRecordingStore
from sessionvault.services.transcription.recovery import TranscriptionRecovery
from sessionvault.services.upload.connectivity import ConnectivityWatcher
from sessionvault.services.upload.queue import UploadQueue

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived objects shared by every request."""

    orchestrator: SessionRecordingOrchestrator
    queue: UploadQueue
    backend: BaseRecordingBackend
    scheduler: AsyncioScheduler | None = None
    watcher: ConnectivityWatcher | None = None


async def build_services(settings: Settings | None = None) -> Services:
    """Create the database, device source, backend client and services."""
    settings = settings or get_settings()
    await init_db()

    scheduler = AsyncioScheduler()
    backend = create_backend("http", settings=settings)
    store = LocalRecordingStore(get_session_factory(), settings=settings)
    capture = AudioCapture(create_audio_source(settings=settings), settings=settings)
    queue = UploadQueue(backend, store, scheduler, settings=settings)
    recovery = TranscriptionRecovery(backend, scheduler, settings=settings)
    orchestrator = SessionRecordingOrchestrator(
        capture,
        store,
        queue,
        recovery,
        backend,
        scheduler,
        BreadcrumbStore(settings.data_dir),
        settings=settings,
    )
    watcher = ConnectivityWatcher(backend, orchestrator, scheduler, settings=settings)
    watcher.start()
    logger.info("Services ready (backend=%s)", settings.backend_url)
    return Services(
        orchestrator=orchestrator,
        queue=queue,
        backend=backend,
        scheduler=scheduler,
        watcher=watcher,
    )


async def close_services(services: Services) -> None:
    """Run the suspend hook, then release every resource."""
    if services.watcher is not None:
        services.watcher.stop()
    services.orchestrator.on_suspend_requested()
    await services.orchestrator.unmount()
    if services.scheduler is not None:
        await services.scheduler.shutdown()
    await services.backend.close()
    await close_db()


def get_orchestrator(request: Request) -> SessionRecordingOrchestrator:
    return request.app.state.services.orchestrator


def get_queue(request: Request) -> UploadQueue:
    return request.app.state.services.queue
