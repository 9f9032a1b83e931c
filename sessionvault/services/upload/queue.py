"""Background upload queue.

Every recording handed to ``queue_upload()`` is first written to the
local store (the durability anchor) and then driven through the remote
pipeline in its own ``asyncio.Task``::

    create session (if missing) -> create recording row -> upload blob
    -> update duration -> mark uploaded locally -> start transcription

Steps for one upload run strictly in order; separate uploads run
concurrently. A failure before the blob is confirmed leaves the local
copy with ``upload_error`` set so reconnect recovery can retry it. A
failure to *start* transcription is only a warning: the audio is safe.
"""

import asyncio
import inspect
import logging
import math
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import (
    InvalidUploadError,
    LocalRecordingNotFoundError,
    NotSignedInError,
    PersistenceError,
    SessionVaultError,
    TranscriptionStartError,
    UploadNotFoundError,
)
from sessionvault.core.models import (
    AudioBlob,
    LocalAuditAction,
    Notice,
    NoticeCategory,
    NoticeKind,
    PendingUpload,
    UploadStatus,
    UserContext,
)
from sessionvault.core.scheduler import Scheduler, TimerHandle
from sessionvault.core.utils import format_megabytes, recording_file_name, session_title
from sessionvault.services.backend.base import BaseRecordingBackend
from sessionvault.services.storage.audit import LocalRecordingAudit
from sessionvault.services.storage.repository import LocalRecordingStore

logger = logging.getLogger(__name__)

UPLOAD_ERROR_TITLE = "Ошибка загрузки"
SAVED_LOCALLY_MESSAGE = "Запись сохранена локально и будет загружена позже"
TRANSCRIPTION_NOT_CONFIGURED = "Сервис транскрипции не настроен. Запись загружена без транскрипции."

TranscriptionStartedCallback = Callable[[str, str], Awaitable[None] | None]
NoticeListener = Callable[[Notice], None]


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, SessionVaultError):
        return exc.detail
    return str(exc) or exc.__class__.__name__


class UploadQueue:
    """In-memory queue of uploads, each backed by a local copy.

    Args:
        backend: Durable recordings backend.
        store: Local store used as the durability anchor.
        scheduler: Timer source (transcription-start backoff, display delay).
        settings: Application settings.
    """

    def __init__(
        self,
        backend: BaseRecordingBackend,
        store: LocalRecordingStore,
        scheduler: Scheduler,
        settings: Settings | None = None,
    ) -> None:
        self._backend = backend
        self._store = store
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._user: UserContext | None = None
        self._uploads: dict[str, PendingUpload] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._inflight_local: set[str] = set()
        self._removal_timers: dict[str, TimerHandle] = {}
        self._on_transcription_started: TranscriptionStartedCallback | None = None
        self._listeners: list[NoticeListener] = []
        self._audit = LocalRecordingAudit(backend, scheduler)

    # ------------------------------------------------------------------
    # Lifecycle / wiring
    # ------------------------------------------------------------------

    def init(self, user: UserContext) -> None:
        self._user = user

    async def shutdown(self) -> None:
        """Cancel display timers and in-flight pipelines; forget the user."""
        for handle in self._removal_timers.values():
            handle.cancel()
        self._removal_timers.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._inflight_local.clear()
        self._uploads.clear()
        self._user = None

    def set_on_transcription_started(self, callback: TranscriptionStartedCallback | None) -> None:
        """Register the hand-off to transcription tracking (None to clear)."""
        self._on_transcription_started = callback

    def add_listener(self, listener: NoticeListener) -> Callable[[], None]:
        """Subscribe to notices; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def pending_uploads(self) -> list[PendingUpload]:
        return list(self._uploads.values())

    def get(self, upload_id: str) -> PendingUpload:
        try:
            return self._uploads[upload_id]
        except KeyError:
            raise UploadNotFoundError(upload_id) from None

    def counts(self) -> dict[str, int]:
        queued = active = failed = 0
        for upload in self._uploads.values():
            if upload.status == UploadStatus.queued:
                queued += 1
            elif upload.status in (UploadStatus.uploading, UploadStatus.transcribing_start):
                active += 1
            elif upload.status == UploadStatus.failed:
                failed += 1
        return {"queued": queued, "active": active, "failed": failed}

    @property
    def has_active_uploads(self) -> bool:
        return any(
            u.status in (UploadStatus.queued, UploadStatus.uploading, UploadStatus.transcribing_start)
            for u in self._uploads.values()
        )

    def is_local_in_flight(self, local_id: str) -> bool:
        return local_id in self._inflight_local

    async def join(self) -> None:
        """Wait until no pipeline task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def _require_user(self) -> UserContext:
        if self._user is None:
            raise NotSignedInError()
        return self._user

    def _validate(self, blob: AudioBlob | None, duration_seconds: float) -> None:
        if blob is None or blob.size == 0:
            raise InvalidUploadError("Запись пуста: нет аудиоданных для загрузки")
        if not math.isfinite(duration_seconds) or duration_seconds < 0:
            raise InvalidUploadError(f"Invalid recording duration: {duration_seconds}")
        max_mb = self._settings.max_file_size_mb
        if blob.size > max_mb * 1024 * 1024:
            raise InvalidUploadError(
                f"Файл слишком большой ({format_megabytes(blob.size)} MB). "
                f"Максимальный размер: {max_mb} MB. "
                "Попробуйте записать более короткую сессию."
            )

    async def queue_upload(
        self,
        blob: AudioBlob | None,
        duration_seconds: float,
        session_id: str | None = None,
        file_name: str | None = None,
        patient_id: str | None = None,
    ) -> PendingUpload:
        """Persist locally, then upload in the background.

        Returns as soon as the local write has settled; the returned entry
        is updated in place as the pipeline advances.

        Raises:
            NotSignedInError: ``init()`` has not been called.
            InvalidUploadError: Empty blob, bad duration, or file too large.
        """
        self._require_user()
        self._validate(blob, duration_seconds)

        upload = PendingUpload(
            id=f"upload-{uuid.uuid4().hex[:12]}",
            blob=blob,
            duration_seconds=duration_seconds,
            file_name=file_name or recording_file_name(blob.mime_type),
            session_id=session_id,
            patient_id=patient_id,
            created_at=self._scheduler.now(),
        )

        try:
            upload.local_recording_id = await self._store.save(
                blob, upload.file_name, duration_seconds, session_id
            )
            self._audit.record(
                self._user,
                LocalAuditAction.save,
                upload.local_recording_id,
                file_name=upload.file_name,
                duration=duration_seconds,
            )
        except PersistenceError as exc:
            # Non-critical: the upload still proceeds from memory
            logger.warning("Local save failed for %s (non-critical): %s", upload.file_name, exc.detail)
            self._emit(
                Notice(
                    kind=NoticeKind.warning,
                    category=NoticeCategory.storage,
                    title="Не удалось сохранить запись локально",
                    description=exc.detail,
                    session_id=session_id,
                )
            )

        self._register(upload)
        logger.info(
            "Queued upload %s (%s, %d bytes, local=%s)",
            upload.id,
            upload.file_name,
            blob.size,
            upload.local_recording_id,
        )
        return upload

    def _register(self, upload: PendingUpload) -> None:
        self._uploads[upload.id] = upload
        self._spawn(upload)

    def _spawn(self, upload: PendingUpload) -> None:
        if upload.local_recording_id:
            self._inflight_local.add(upload.local_recording_id)
        task = asyncio.create_task(self._run(upload), name=f"upload-{upload.id}")
        self._tasks[upload.id] = task

        def _done(_task: asyncio.Task, upload_id: str = upload.id) -> None:
            if self._tasks.get(upload_id) is _task:
                del self._tasks[upload_id]

        task.add_done_callback(_done)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, upload: PendingUpload) -> None:
        try:
            await self._process(upload)
        except asyncio.CancelledError:
            logger.info("Upload %s cancelled", upload.id)
            raise
        except Exception as exc:
            logger.exception("Upload pipeline crashed for %s", upload.id)
            await self._fail(upload, exc)
        finally:
            if upload.local_recording_id:
                self._inflight_local.discard(upload.local_recording_id)

    async def _process(self, upload: PendingUpload) -> None:
        user = self._require_user()
        upload.status = UploadStatus.uploading
        upload.error = None
        local_id = upload.local_recording_id

        try:
            if not upload.session_id:
                upload.session_id = await self._backend.create_session(
                    user, session_title(datetime.now()), upload.patient_id
                )
                logger.info("Created session %s for upload %s", upload.session_id, upload.id)

            if not upload.remote_recording_id:
                record = await self._backend.create_recording_record(
                    upload.session_id, user.user_id, upload.file_name
                )
                upload.remote_recording_id = record.id
                if local_id:
                    await self._local_step(
                        self._store.attach_remote(local_id, record.id, upload.session_id)
                    )

            await self._backend.upload_audio_blob(
                upload.remote_recording_id, upload.blob, upload.file_name
            )
            await self._backend.update_recording_duration(
                upload.remote_recording_id, upload.duration_seconds
            )
        except SessionVaultError as exc:
            await self._fail(upload, exc)
            return

        if local_id:
            await self._local_step(
                self._store.mark_uploaded(local_id, upload.remote_recording_id, upload.session_id)
            )
            self._audit.record(
                user,
                LocalAuditAction.upload_success,
                upload.remote_recording_id,
                file_name=upload.file_name,
                duration=upload.duration_seconds,
            )
        logger.info("Upload %s stored as recording %s", upload.id, upload.remote_recording_id)

        upload.status = UploadStatus.transcribing_start
        await self._start_transcription(upload)

        upload.status = UploadStatus.succeeded
        self._emit(
            Notice(
                kind=NoticeKind.info,
                category=NoticeCategory.upload,
                title="Запись загружена",
                recording_id=upload.remote_recording_id,
                session_id=upload.session_id,
            )
        )
        self._schedule_removal(upload)

    async def _local_step(self, step: Awaitable[bool]) -> None:
        """Run a local-store update; failures are logged, never fatal."""
        try:
            await step
        except PersistenceError as exc:
            logger.warning("Local store update failed (non-critical): %s", exc.detail)

    async def _start_transcription(self, upload: PendingUpload) -> None:
        api_url = self._settings.transcription_api_url
        recording_id = upload.remote_recording_id
        if not api_url:
            logger.warning("Transcription API URL not configured; skipping start for %s", recording_id)
            upload.warning = TRANSCRIPTION_NOT_CONFIGURED
            self._emit(
                Notice(
                    kind=NoticeKind.warning,
                    category=NoticeCategory.config,
                    title="Транскрипция не настроена",
                    description=TRANSCRIPTION_NOT_CONFIGURED,
                    recording_id=recording_id,
                    session_id=upload.session_id,
                )
            )
            return

        delays = self._settings.transcription_start_delays
        retrying = AsyncRetrying(
            stop=stop_after_attempt(len(delays)),
            wait=wait_chain(*[wait_fixed(d) for d in delays]),
            retry=retry_if_exception_type(TranscriptionStartError),
            sleep=self._scheduler.sleep,
            before_sleep=self._log_start_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._backend.start_transcription(recording_id, api_url)
        except Exception as exc:
            message = _error_message(exc)
            logger.warning(
                "Transcription start failed for %s after %d attempt(s): %s",
                recording_id,
                len(delays),
                message,
            )
            upload.warning = f"Транскрипция не запущена: {message}"
            self._emit(
                Notice(
                    kind=NoticeKind.warning,
                    category=NoticeCategory.transcription,
                    title="Ошибка транскрипции",
                    description="Запись загружена, но транскрипцию не удалось запустить. "
                    "Повторите попытку позже.",
                    recording_id=recording_id,
                    session_id=upload.session_id,
                )
            )
            return

        logger.info("Transcription started for %s", recording_id)
        await self._notify_transcription_started(recording_id, upload.session_id)

    @staticmethod
    def _log_start_retry(retry_state: RetryCallState) -> None:
        logger.info(
            "Transcription start attempt %d failed; retrying in %.0fs",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    async def _notify_transcription_started(self, recording_id: str, session_id: str) -> None:
        callback = self._on_transcription_started
        if callback is None:
            return
        try:
            result = callback(recording_id, session_id)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Transcription-started callback failed for %s (non-fatal)", recording_id)

    async def _fail(self, upload: PendingUpload, exc: BaseException) -> None:
        message = _error_message(exc)
        logger.error("Upload %s failed: %s", upload.id, message)
        upload.status = UploadStatus.failed
        upload.error = message

        if upload.local_recording_id:
            await self._local_step(self._store.mark_upload_failed(upload.local_recording_id, message))
            self._audit.record(
                self._user,
                LocalAuditAction.upload_failed,
                upload.remote_recording_id,
                file_name=upload.file_name,
                error=message,
            )

        if "слишком большой" in message:
            description = message
        elif upload.local_recording_id:
            description = SAVED_LOCALLY_MESSAGE
        else:
            description = message
        self._emit(
            Notice(
                kind=NoticeKind.error,
                category=NoticeCategory.upload,
                title=UPLOAD_ERROR_TITLE,
                description=description,
                recording_id=upload.remote_recording_id,
                session_id=upload.session_id,
            )
        )

    def _schedule_removal(self, upload: PendingUpload) -> None:
        async def _remove() -> None:
            self._removal_timers.pop(upload.id, None)
            current = self._uploads.get(upload.id)
            if current is upload and upload.status == UploadStatus.succeeded:
                del self._uploads[upload.id]

        self._removal_timers[upload.id] = self._scheduler.call_later(
            self._settings.upload_display_seconds, _remove
        )

    # ------------------------------------------------------------------
    # Retry / recovery / cancel
    # ------------------------------------------------------------------

    def retry_upload(self, upload_id: str) -> PendingUpload:
        """Re-run a failed upload. Entries that are not failed are left alone."""
        self._require_user()
        upload = self.get(upload_id)
        if upload.status != UploadStatus.failed or upload_id in self._tasks:
            logger.info("Upload %s is %s; retry ignored", upload_id, upload.status)
            return upload
        upload.status = UploadStatus.queued
        upload.error = None
        self._spawn(upload)
        return upload

    async def retry_local_recording(self, local_id: str) -> PendingUpload | None:
        """Upload a recording from the local store.

        Reuses the remote row recorded by an earlier attempt, and returns the
        existing entry when this local recording is already being uploaded.
        Returns None when the entry is already uploaded.

        Raises:
            LocalRecordingNotFoundError: No such (non-expired) entry.
        """
        self._require_user()
        for upload in self._uploads.values():
            if upload.local_recording_id == local_id:
                if upload.status == UploadStatus.failed:
                    return self.retry_upload(upload.id)
                return upload
        if local_id in self._inflight_local:
            return None

        self._inflight_local.add(local_id)
        try:
            entry = await self._store.get(local_id)
        except PersistenceError:
            self._inflight_local.discard(local_id)
            raise
        if entry is None or entry.blob is None:
            self._inflight_local.discard(local_id)
            raise LocalRecordingNotFoundError(local_id)
        self._audit.record(self._user, LocalAuditAction.read, local_id, file_name=entry.file_name)
        if entry.uploaded:
            self._inflight_local.discard(local_id)
            logger.info("Local recording %s already uploaded; nothing to retry", local_id)
            return None

        upload = PendingUpload(
            id=f"upload-{uuid.uuid4().hex[:12]}",
            blob=entry.blob,
            duration_seconds=entry.duration_seconds,
            file_name=entry.file_name,
            session_id=entry.session_id,
            local_recording_id=local_id,
            remote_recording_id=entry.remote_recording_id,
            created_at=self._scheduler.now(),
        )
        self._register(upload)
        logger.info("Retrying local recording %s as upload %s", local_id, upload.id)
        return upload

    async def recover_unuploaded(self) -> list[PendingUpload]:
        """Retry every finished local recording that never reached the backend.

        Checkpoint snapshots are skipped (they belong to the recovery dialog)
        and entries already in flight are not started twice.
        """
        self._require_user()
        try:
            entries = await self._store.list_unuploaded()
        except PersistenceError as exc:
            logger.error("Could not list local recordings for recovery: %s", exc.detail)
            return []

        started: list[PendingUpload] = []
        for entry in entries:
            if entry.is_checkpoint:
                logger.debug("Skipping checkpoint %s during auto-recovery", entry.id)
                continue
            if entry.id in self._inflight_local:
                continue
            try:
                upload = await self.retry_local_recording(entry.id)
            except (LocalRecordingNotFoundError, PersistenceError) as exc:
                logger.warning("Skipping local recording %s: %s", entry.id, exc.detail)
                continue
            if upload is not None:
                started.append(upload)

        if started:
            logger.info("Reconnect recovery started %d upload(s)", len(started))
        return started

    async def cancel_upload(self, upload_id: str) -> bool:
        """Drop a still-queued upload and its local copy."""
        upload = self.get(upload_id)
        if upload.status != UploadStatus.queued:
            return False
        task = self._tasks.pop(upload_id, None)
        if task is not None:
            task.cancel()
        del self._uploads[upload_id]
        if upload.local_recording_id:
            self._inflight_local.discard(upload.local_recording_id)
            await self._local_step(self._store.delete(upload.local_recording_id))
            self._audit.record(
                self._user, LocalAuditAction.delete, upload.local_recording_id, file_name=upload.file_name
            )
        logger.info("Upload %s cancelled while queued", upload_id)
        return True

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    def _emit(self, notice: Notice) -> None:
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.warning("Notice listener failed (non-fatal)")
