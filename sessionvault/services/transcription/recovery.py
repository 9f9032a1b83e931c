"""User-wide tracker for transcriptions that are still processing.

Each tracked recording is a small state object polled on the scheduler.
The next poll is armed only after the previous response was handled, so
polls for one recording never overlap. Polling escalates as it ages:

* after ``poll_force_sync_after`` attempts every status read asks the
  backend to sync from the transcription service first;
* after ``poll_manual_sync_after`` attempts, every
  ``poll_manual_sync_every``-th attempt issues an explicit sync call.

A terminal status fires the completion or error callback. When the
attempt budget runs out the recording is dropped without further calls.
Poll failures are retried after a backoff and do not consume attempts;
a separate error budget bounds recordings that keep failing.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import NotSignedInError, PersistenceError, SessionVaultError
from sessionvault.core.models import (
    TrackedTranscription,
    TranscriptionStatus,
    TranscriptionStatusResult,
    UserContext,
)
from sessionvault.core.scheduler import Scheduler
from sessionvault.services.backend.base import BaseRecordingBackend

logger = logging.getLogger(__name__)

TRANSCRIPTION_ERROR_TITLE = "Ошибка транскрипции"

CompleteCallback = Callable[[str, str], Awaitable[None] | None]
ErrorCallback = Callable[[str, str], Awaitable[None] | None]


class TranscriptionRecovery:
    """Polls the backend until each tracked transcription settles.

    Args:
        backend: Durable recordings backend.
        scheduler: Timer source for polls.
        settings: Poll interval, budgets and sync thresholds.
    """

    def __init__(
        self,
        backend: BaseRecordingBackend,
        scheduler: Scheduler,
        settings: Settings | None = None,
    ) -> None:
        self._backend = backend
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._user: UserContext | None = None
        self._tracked: dict[str, TrackedTranscription] = {}
        self._on_complete: CompleteCallback | None = None
        self._on_error: ErrorCallback | None = None

    # -- lifecycle --

    async def init(self, user: UserContext) -> int:
        """Bind to *user* and resume tracking their processing recordings."""
        self._user = user
        return await self.refresh_from_backend()

    def teardown(self) -> None:
        """Cancel every pending poll and forget all state."""
        for tracked in self._tracked.values():
            if tracked.timer is not None:
                tracked.timer.cancel()
        self._tracked.clear()
        self._user = None

    async def refresh_from_backend(self, session_id: str | None = None) -> int:
        """Track every recording the backend still reports as processing.

        Returns:
            Number of recordings newly added to tracking.
        """
        if self._user is None:
            raise NotSignedInError()
        try:
            recordings = await self._backend.list_processing_recordings(
                self._user.user_id, session_id
            )
        except PersistenceError as exc:
            logger.warning("Could not load processing recordings: %s", exc.detail)
            return 0
        added = sum(1 for r in recordings if self.add_transcription(r.id, r.session_id))
        if added:
            logger.info("Resumed tracking %d processing transcription(s)", added)
        return added

    # -- wiring --

    def set_on_complete(self, callback: CompleteCallback | None) -> None:
        self._on_complete = callback

    def set_on_error(self, callback: ErrorCallback | None) -> None:
        self._on_error = callback

    # -- queries --

    @property
    def tracked(self) -> list[TrackedTranscription]:
        return list(self._tracked.values())

    @property
    def count(self) -> int:
        return len(self._tracked)

    @property
    def is_any_processing(self) -> bool:
        return bool(self._tracked)

    def get(self, recording_id: str) -> TrackedTranscription | None:
        return self._tracked.get(recording_id)

    # -- tracking --

    def add_transcription(
        self, recording_id: str, session_id: str, started_at: float | None = None
    ) -> bool:
        """Start polling *recording_id*; a no-op if it is already tracked."""
        if recording_id in self._tracked:
            return False
        tracked = TrackedTranscription(
            recording_id=recording_id,
            session_id=session_id,
            started_at=started_at if started_at is not None else self._scheduler.now(),
        )
        self._tracked[recording_id] = tracked
        self._arm(tracked, self._settings.poll_interval_seconds)
        logger.debug("Tracking transcription %s (session %s)", recording_id, session_id)
        return True

    def remove_transcription(self, recording_id: str) -> bool:
        tracked = self._tracked.pop(recording_id, None)
        if tracked is None:
            return False
        if tracked.timer is not None:
            tracked.timer.cancel()
            tracked.timer = None
        return True

    def _arm(self, tracked: TrackedTranscription, delay: float) -> None:
        async def _fire() -> None:
            await self._poll(tracked)

        tracked.timer = self._scheduler.call_later(delay, _fire)

    def _is_current(self, tracked: TrackedTranscription) -> bool:
        return self._tracked.get(tracked.recording_id) is tracked

    async def _poll(self, tracked: TrackedTranscription) -> None:
        if not self._is_current(tracked):
            return
        tracked.timer = None
        s = self._settings
        attempt = tracked.attempts + 1
        api_url = s.transcription_api_url or None

        try:
            synced = False
            if (
                api_url
                and attempt > s.poll_manual_sync_after
                and attempt % s.poll_manual_sync_every == 0
            ):
                synced = await self._manual_sync(tracked.recording_id, api_url)
            result = await self._backend.get_transcription_status(
                tracked.recording_id,
                api_url,
                force_sync=attempt > s.poll_force_sync_after and not synced,
            )
        except Exception as exc:
            if not self._is_current(tracked):
                return
            self._handle_poll_error(tracked, exc)
            return

        if not self._is_current(tracked):
            return
        tracked.attempts = attempt
        await self._handle_result(tracked, result)

    async def _manual_sync(self, recording_id: str, api_url: str) -> bool:
        try:
            await self._backend.sync_transcription_status(recording_id, api_url)
            return True
        except SessionVaultError as exc:
            logger.warning("Manual sync failed for %s: %s", recording_id, exc.detail)
            return False

    def _handle_poll_error(self, tracked: TrackedTranscription, exc: Exception) -> None:
        tracked.errors += 1
        if tracked.errors >= self._settings.poll_max_errors:
            logger.error(
                "Giving up on transcription %s after %d failed status checks: %s",
                tracked.recording_id,
                tracked.errors,
                exc,
            )
            self.remove_transcription(tracked.recording_id)
            return
        logger.warning(
            "Status check failed for %s (%d/%d): %s",
            tracked.recording_id,
            tracked.errors,
            self._settings.poll_max_errors,
            exc,
        )
        self._arm(tracked, self._settings.poll_error_backoff_seconds)

    async def _handle_result(
        self, tracked: TrackedTranscription, result: TranscriptionStatusResult
    ) -> None:
        recording_id = tracked.recording_id
        if result.status == TranscriptionStatus.completed:
            self.remove_transcription(recording_id)
            logger.info("Transcription %s completed after %d poll(s)", recording_id, tracked.attempts)
            await self._fire(self._on_complete, recording_id, tracked.session_id)
        elif result.status == TranscriptionStatus.failed:
            self.remove_transcription(recording_id)
            error = result.error or "Транскрипция не удалась"
            logger.warning("Transcription %s failed: %s", recording_id, error)
            await self._fire(self._on_error, recording_id, error)
        elif tracked.attempts >= self._settings.poll_max_attempts:
            self.remove_transcription(recording_id)
            logger.warning(
                "Stopped tracking %s after %d attempts (still %s)",
                recording_id,
                tracked.attempts,
                result.status,
            )
        else:
            self._arm(tracked, self._settings.poll_interval_seconds)

    @staticmethod
    async def _fire(callback, recording_id: str, arg: str) -> None:
        if callback is None:
            return
        try:
            result = callback(recording_id, arg)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Transcription callback failed for %s", recording_id)
