"""Session recording orchestrator.

Ties capture, local persistence, the upload queue and transcription
tracking to one signed-in clinician. Responsibilities:

* transport controls for the active recording;
* a periodic checkpoint of the in-progress audio into the local store
  (exactly one checkpoint is held per recording);
* lifecycle hooks: hide, suspend, reconnect;
* the recovery dialog's data (breadcrumb + orphaned local recordings);
* reconciliation when a transcription finishes.

Capture, upload and transcription failures are surfaced as three
separate notice classes.

Usage::

    orchestrator = SessionRecordingOrchestrator(capture, store, queue, recovery, backend,
                                                scheduler, breadcrumbs)
    await orchestrator.mount(user)
    await orchestrator.start_recording(session_id)
    upload, result = await orchestrator.stop_recording()
    await orchestrator.unmount()
"""

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import (
    InvalidUploadError,
    LocalRecordingNotFoundError,
    NotSignedInError,
    PersistenceError,
    TranscriptionStartError,
)
from sessionvault.core.models import (
    CaptureResult,
    LocalAuditAction,
    Notice,
    NoticeCategory,
    NoticeKind,
    PendingUpload,
    RecorderStatus,
    RecoveryBreadcrumb,
    RecoveryReport,
    TranscriptionStatus,
    TranscriptionStatusResult,
    UserContext,
)
from sessionvault.core.scheduler import Scheduler, TimerHandle
from sessionvault.core.utils import now_ms, recording_file_name
from sessionvault.services.audio.capture import AudioCapture
from sessionvault.services.backend.base import BaseRecordingBackend
from sessionvault.services.lifecycle import BreadcrumbStore, LifecycleObserver
from sessionvault.services.storage.audit import LocalRecordingAudit
from sessionvault.services.storage.repository import LocalRecordingStore
from sessionvault.services.transcription.recovery import (
    TRANSCRIPTION_ERROR_TITLE,
    TranscriptionRecovery,
)
from sessionvault.services.upload.queue import UploadQueue

logger = logging.getLogger(__name__)

CAPTURE_ERROR_TITLE = "Ошибка записи"
CONFIG_WARNING = "Сервис транскрипции не настроен: записи будут загружаться без транскрипции."

SessionListener = Callable[[str], Awaitable[None] | None]


@dataclass
class OrchestratorSnapshot:
    """Point-in-time state for the recording screen."""

    status: RecorderStatus
    session_id: str | None
    duration_seconds: float
    was_partial_save: bool
    error: str | None
    input_level: float
    upload_counts: dict[str, int]
    tracked_transcriptions: list[str] = field(default_factory=list)
    config_warning: str | None = None


class SessionRecordingOrchestrator(LifecycleObserver):
    """Coordinates one user's recording, upload and transcription state.

    Args:
        capture: Microphone capture state machine.
        store: Local recording store (checkpoints and orphans).
        queue: Background upload queue.
        recovery: Transcription tracker.
        backend: Recordings backend (manual sync, transcription retry).
        scheduler: Timer source for checkpoints.
        breadcrumbs: Suspend-time metadata hint file.
        settings: Application settings.
    """

    def __init__(
        self,
        capture: AudioCapture,
        store: LocalRecordingStore,
        queue: UploadQueue,
        recovery: TranscriptionRecovery,
        backend: BaseRecordingBackend,
        scheduler: Scheduler,
        breadcrumbs: BreadcrumbStore,
        settings: Settings | None = None,
    ) -> None:
        self._capture = capture
        self._store = store
        self._queue = queue
        self._recovery = recovery
        self._backend = backend
        self._scheduler = scheduler
        self._breadcrumbs = breadcrumbs
        self._settings = settings or get_settings()

        self._user: UserContext | None = None
        self._session_id: str | None = None
        self._patient_id: str | None = None
        self._checkpoint_id: str | None = None
        self._checkpoint_lock = asyncio.Lock()
        self._checkpoint_timer: TimerHandle | None = None
        self._pending_checkpoint: TimerHandle | None = None
        self._session_listeners: list[SessionListener] = []
        self._unsubscribe_queue: Callable[[], None] | None = None
        self.config_warning: str | None = None
        self.recent_notices: deque[Notice] = deque(maxlen=50)
        self._audit = LocalRecordingAudit(backend, scheduler)

        self._capture.add_error_listener(self._on_capture_error)

    # ------------------------------------------------------------------
    # Mount / unmount
    # ------------------------------------------------------------------

    @property
    def user(self) -> UserContext | None:
        return self._user

    @property
    def checkpoint_id(self) -> str | None:
        return self._checkpoint_id

    async def mount(self, user: UserContext) -> None:
        """Bind every service to *user* and resume tracking their transcriptions."""
        if self._user is not None:
            if self._user == user:
                return
            await self.unmount()
        self._user = user
        self._queue.init(user)
        self._queue.set_on_transcription_started(self._recovery.add_transcription)
        self._unsubscribe_queue = self._queue.add_listener(self._on_notice)
        self._recovery.set_on_complete(self._on_transcription_complete)
        self._recovery.set_on_error(self._on_transcription_error)

        if not self._settings.transcription_api_url:
            self.config_warning = CONFIG_WARNING
            logger.warning("Transcription API URL is not configured")
            self._emit(
                Notice(
                    kind=NoticeKind.warning,
                    category=NoticeCategory.config,
                    title="Транскрипция не настроена",
                    description=CONFIG_WARNING,
                )
            )
        else:
            self.config_warning = None

        try:
            await self._store.cleanup_expired()
        except PersistenceError as exc:
            logger.warning("Expired local recording cleanup failed: %s", exc.detail)

        await self._recovery.init(user)
        logger.info("Mounted recording services for user %s", user.user_id)

    async def unmount(self) -> None:
        """Tear down every timer and background task.

        An active recording is checkpointed first so its audio survives.
        """
        self._cancel_checkpoint_timers()
        if self._capture.is_active or self._capture.status == RecorderStatus.error:
            await self.checkpoint()
            await self._capture.cancel()

        self._queue.set_on_transcription_started(None)
        if self._unsubscribe_queue is not None:
            self._unsubscribe_queue()
            self._unsubscribe_queue = None
        self._recovery.set_on_complete(None)
        self._recovery.set_on_error(None)
        self._recovery.teardown()
        await self._queue.shutdown()

        if self._user is not None:
            logger.info("Unmounted recording services for user %s", self._user.user_id)
        self._user = None
        self._session_id = None
        self._patient_id = None
        self._checkpoint_id = None

    async def sign_out(self) -> None:
        """Unmount and wipe every local recording of this device."""
        await self.unmount()
        removed = await self._store.clear_all()
        self._breadcrumbs.clear()
        logger.info("Signed out; removed %d local recording(s)", removed)

    def _require_user(self) -> UserContext:
        if self._user is None:
            raise NotSignedInError()
        return self._user

    # ------------------------------------------------------------------
    # Transport controls
    # ------------------------------------------------------------------

    async def start_recording(
        self, session_id: str | None = None, patient_id: str | None = None
    ) -> None:
        self._require_user()
        if self._capture.status in (RecorderStatus.stopped, RecorderStatus.error):
            await self._capture.reset()
        await self._capture.start()
        self._session_id = session_id
        self._patient_id = patient_id
        self._checkpoint_id = None
        self._arm_checkpoint()
        logger.info("Recording started for session %s", session_id)

    def pause_recording(self) -> None:
        self._capture.pause()

    def resume_recording(self) -> None:
        self._capture.resume()

    async def stop_recording(self) -> tuple[PendingUpload | None, CaptureResult]:
        """Stop capture and hand the blob to the upload queue.

        The checkpoint is dropped only once the queue holds its own local
        copy; otherwise it stays available in the recovery dialog.

        Raises:
            InvalidUploadError: The queue rejected the recording.
        """
        self._require_user()
        self._cancel_checkpoint_timers()
        device_failed = self._capture.status == RecorderStatus.error
        result = await self._capture.stop()

        if result.blob is None:
            self._emit(
                Notice(
                    kind=NoticeKind.error,
                    category=NoticeCategory.capture,
                    title=CAPTURE_ERROR_TITLE,
                    description="Запись не содержит аудиоданных",
                    session_id=self._session_id,
                )
            )
            return None, result

        if result.partial:
            self._emit(
                Notice(
                    kind=NoticeKind.warning,
                    category=NoticeCategory.capture,
                    title="Запись сохранена частично",
                    description=(
                        "Микрофон отключился; сохранена часть записи до сбоя."
                        if device_failed
                        else "Остановка заняла слишком много времени; "
                        "сохранена только уже записанная часть."
                    ),
                    session_id=self._session_id,
                )
            )

        try:
            upload = await self._queue.queue_upload(
                result.blob,
                result.duration_seconds,
                session_id=self._session_id,
                patient_id=self._patient_id,
            )
        except InvalidUploadError as exc:
            self._emit(
                Notice(
                    kind=NoticeKind.error,
                    category=NoticeCategory.upload,
                    title="Ошибка загрузки",
                    description=exc.detail,
                    session_id=self._session_id,
                )
            )
            raise

        if upload.local_recording_id:
            await self._delete_checkpoint()
        else:
            logger.warning("Keeping checkpoint %s: final recording has no local copy", self._checkpoint_id)
        self._breadcrumbs.clear()
        return upload, result

    async def cancel_recording(self) -> None:
        """Hard abort: discard audio, the checkpoint and the breadcrumb."""
        self._cancel_checkpoint_timers()
        await self._capture.cancel()
        await self._delete_checkpoint()
        self._breadcrumbs.clear()
        logger.info("Recording for session %s cancelled", self._session_id)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _has_live_audio(self) -> bool:
        return self._capture.status in (
            RecorderStatus.recording,
            RecorderStatus.paused,
            RecorderStatus.error,
        )

    def _arm_checkpoint(self) -> None:
        self._checkpoint_timer = self._scheduler.call_later(
            self._settings.checkpoint_interval_seconds, self._checkpoint_tick
        )

    async def _checkpoint_tick(self) -> None:
        self._checkpoint_timer = None
        await self.checkpoint()
        if self._capture.status in (RecorderStatus.recording, RecorderStatus.paused):
            self._arm_checkpoint()

    def _cancel_checkpoint_timers(self) -> None:
        for timer in (self._checkpoint_timer, self._pending_checkpoint):
            if timer is not None:
                timer.cancel()
        self._checkpoint_timer = None
        self._pending_checkpoint = None

    async def checkpoint(self, marker: str = "checkpoint") -> str | None:
        """Replace the previous checkpoint with a snapshot of the current audio.

        Returns:
            The new checkpoint's local id, or None if there was nothing to save.
        """
        async with self._checkpoint_lock:
            if not self._has_live_audio():
                return None
            chunks = self._capture.get_current_chunks()
            if not chunks:
                return None
            blob = self._capture.encode_chunks(chunks)

            await self._delete_checkpoint_locked()
            file_name = recording_file_name(blob.mime_type, prefix=marker)
            try:
                self._checkpoint_id = await self._store.save(
                    blob, file_name, self._capture.duration_seconds, self._session_id
                )
            except PersistenceError as exc:
                logger.error("Checkpoint failed: %s", exc.detail)
                self._emit(
                    Notice(
                        kind=NoticeKind.warning,
                        category=NoticeCategory.storage,
                        title="Не удалось сохранить промежуточную копию",
                        description=exc.detail,
                        session_id=self._session_id,
                    )
                )
                return None
            self._audit.record(
                self._user,
                LocalAuditAction.save,
                self._checkpoint_id,
                file_name=file_name,
                duration=self._capture.duration_seconds,
            )
            logger.info(
                "Checkpoint %s saved (%d chunks, %d bytes)",
                self._checkpoint_id,
                len(chunks),
                blob.size,
            )
            return self._checkpoint_id

    async def _delete_checkpoint(self) -> None:
        async with self._checkpoint_lock:
            await self._delete_checkpoint_locked()

    async def _delete_checkpoint_locked(self) -> None:
        old, self._checkpoint_id = self._checkpoint_id, None
        if old is None:
            return
        try:
            deleted = await self._store.delete(old)
        except PersistenceError as exc:
            logger.warning("Failed to delete checkpoint %s: %s", old, exc.detail)
            return
        if deleted:
            self._audit.record(self._user, LocalAuditAction.delete, old)

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    async def on_hidden(self) -> None:
        await self.checkpoint(marker="hidden")

    def on_suspend_requested(self) -> bool:
        if not self._capture.is_active:
            return False
        chunks = self._capture.get_current_chunks()
        try:
            self._breadcrumbs.write(
                RecoveryBreadcrumb(
                    chunks_count=len(chunks),
                    mime_type=self._capture.get_current_mime_type(),
                    session_id=self._session_id,
                    duration=self._capture.duration_seconds,
                    timestamp=now_ms(),
                )
            )
        except OSError as exc:
            logger.error("Failed to write recovery breadcrumb: %s", exc)

        async def _best_effort() -> None:
            self._pending_checkpoint = None
            await self.checkpoint(marker="hidden")

        if self._pending_checkpoint is not None:
            self._pending_checkpoint.cancel()
        self._pending_checkpoint = self._scheduler.call_later(0, _best_effort)
        return True

    async def on_online(self) -> None:
        if self._user is None:
            return
        started = await self._queue.recover_unuploaded()
        if started:
            self._emit(
                Notice(
                    kind=NoticeKind.info,
                    category=NoticeCategory.upload,
                    title="Загрузка возобновлена",
                    description=f"Повторная загрузка записей: {len(started)}",
                )
            )

    # ------------------------------------------------------------------
    # Recovery dialog
    # ------------------------------------------------------------------

    async def check_recovery(self) -> RecoveryReport:
        """Breadcrumb hint plus every local recording awaiting a decision."""
        breadcrumb = self._breadcrumbs.read()
        entries = await self._store.list_unuploaded()
        orphans = [
            e
            for e in entries
            if e.id != self._checkpoint_id and not self._queue.is_local_in_flight(e.id)
        ]
        return RecoveryReport(breadcrumb=breadcrumb, orphans=orphans)

    async def retry_orphan(self, local_id: str) -> PendingUpload | None:
        self._require_user()
        upload = await self._queue.retry_local_recording(local_id)
        self._breadcrumbs.clear()
        return upload

    async def dismiss_orphan(self, local_id: str) -> None:
        if not await self._store.delete(local_id):
            raise LocalRecordingNotFoundError(local_id)
        self._audit.record(self._user, LocalAuditAction.delete, local_id)
        self._breadcrumbs.clear()
        logger.info("Discarded local recording %s", local_id)

    def dismiss_breadcrumb(self) -> None:
        self._breadcrumbs.clear()

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    async def sync_recording(self, recording_id: str) -> TranscriptionStatusResult:
        """Force a sync from the transcription service and read the status."""
        api_url = self._settings.transcription_api_url or None
        result = await self._backend.get_transcription_status(
            recording_id, api_url, force_sync=api_url is not None
        )
        tracked = self._recovery.get(recording_id)
        if result.is_terminal and tracked is not None:
            self._recovery.remove_transcription(recording_id)
            if result.status == TranscriptionStatus.completed:
                await self._on_transcription_complete(recording_id, tracked.session_id)
            else:
                await self._on_transcription_error(
                    recording_id, result.error or "Транскрипция не удалась"
                )
        return result

    async def retry_transcription(self, recording_id: str, session_id: str) -> None:
        """Restart transcription for an uploaded recording and track it.

        Raises:
            TranscriptionStartError: Not configured, or the service refused.
        """
        self._require_user()
        api_url = self._settings.transcription_api_url
        if not api_url:
            raise TranscriptionStartError(CONFIG_WARNING)
        await self._backend.start_transcription(recording_id, api_url)
        self._recovery.remove_transcription(recording_id)
        self._recovery.add_transcription(recording_id, session_id)

    async def _on_transcription_complete(self, recording_id: str, session_id: str) -> None:
        try:
            removed = await self._store.delete_by_remote_id(recording_id)
            if removed:
                logger.info("Removed %d local copy(ies) of recording %s", removed, recording_id)
                self._audit.record(self._user, LocalAuditAction.delete, recording_id)
        except PersistenceError as exc:
            logger.warning("Failed to remove local copy of %s: %s", recording_id, exc.detail)
        await self._notify_session(session_id)

    async def _on_transcription_error(self, recording_id: str, error: str) -> None:
        self._emit(
            Notice(
                kind=NoticeKind.error,
                category=NoticeCategory.transcription,
                title=TRANSCRIPTION_ERROR_TITLE,
                description=error,
                recording_id=recording_id,
            )
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_session_listener(self, listener: SessionListener) -> None:
        """Called with a session id whenever that session's recordings changed."""
        self._session_listeners.append(listener)

    def snapshot(self) -> OrchestratorSnapshot:
        capture = self._capture
        return OrchestratorSnapshot(
            status=capture.status,
            session_id=self._session_id,
            duration_seconds=capture.duration_seconds,
            was_partial_save=capture.was_partial_save,
            error=capture.error,
            input_level=capture.input_level,
            upload_counts=self._queue.counts(),
            tracked_transcriptions=[t.recording_id for t in self._recovery.tracked],
            config_warning=self.config_warning,
        )

    def _on_capture_error(self, message: str) -> None:
        self._cancel_checkpoint_timers()
        self._emit(
            Notice(
                kind=NoticeKind.error,
                category=NoticeCategory.capture,
                title=CAPTURE_ERROR_TITLE,
                description=message,
                session_id=self._session_id,
            )
        )
        if self._capture.get_current_chunks():
            # Salvage what was captured before the device failed
            self._pending_checkpoint = self._scheduler.call_later(0, self.checkpoint)

    def _on_notice(self, notice: Notice) -> None:
        self._emit(notice)
        if (
            notice.category == NoticeCategory.upload
            and notice.kind == NoticeKind.info
            and notice.session_id
        ):
            session_id = notice.session_id

            async def _notify() -> None:
                await self._notify_session(session_id)

            self._scheduler.call_later(0, _notify)

    def _emit(self, notice: Notice) -> None:
        self.recent_notices.append(notice)

    async def _notify_session(self, session_id: str | None) -> None:
        if not session_id:
            return
        for listener in list(self._session_listeners):
            try:
                result = listener(session_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Session listener failed for %s (non-fatal)", session_id)
