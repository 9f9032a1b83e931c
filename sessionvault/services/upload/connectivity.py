"""Backend reachability probe.

Emits ``on_online()`` on every offline -> online transition, which is
what triggers reconnect recovery of unuploaded local recordings.
"""

import logging

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.scheduler import Scheduler, TimerHandle
from sessionvault.services.backend.base import BaseRecordingBackend
from sessionvault.services.lifecycle import LifecycleObserver

logger = logging.getLogger(__name__)


class ConnectivityWatcher:
    """Periodically probes ``check_connection()`` on the scheduler.

    Args:
        backend: Backend whose health endpoint is probed.
        observer: Receives ``on_online()`` when connectivity returns.
        scheduler: Timer source.
        settings: Probe interval.
    """

    def __init__(
        self,
        backend: BaseRecordingBackend,
        observer: LifecycleObserver,
        scheduler: Scheduler,
        settings: Settings | None = None,
    ) -> None:
        self._backend = backend
        self._observer = observer
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._timer: TimerHandle | None = None
        self.online: bool | None = None  # None until the first probe

    def start(self) -> None:
        if self._timer is None:
            self._arm(0)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._scheduler.call_later(delay, self.probe)

    async def probe(self) -> bool:
        """Check once; fires ``on_online`` if we just came back."""
        reachable = await self._backend.check_connection()
        was_offline = self.online is False
        self.online = reachable
        if reachable and was_offline:
            logger.info("Backend reachable again; recovering pending uploads")
            try:
                await self._observer.on_online()
            except Exception:
                logger.exception("Reconnect recovery failed")
        elif not reachable and not was_offline:
            logger.warning("Backend unreachable; uploads will resume when it returns")
        if self._timer is not None:
            self._arm(self._settings.connectivity_probe_seconds)
        return reachable
