"""
HTTP implementation of the recordings backend.

Uses ``httpx.AsyncClient`` against a PostgREST-style REST endpoint for
rows, an object-storage endpoint for audio, and the transcription
service's own API. Blob uploads are retried with exponential backoff
for network, timeout and 5xx failures only.
"""

import logging
from datetime import UTC, datetime

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import (
    PersistenceError,
    StorageError,
    TranscriptionPollError,
    TranscriptionStartError,
)
from sessionvault.core.models import (
    AudioBlob,
    LocalAuditAction,
    RemoteRecording,
    TranscriptionStatus,
    TranscriptionStatusResult,
    UserContext,
)
from sessionvault.core.utils import format_megabytes, now_ms
from sessionvault.services.backend.base import BaseRecordingBackend

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {500, 502, 503, 504}

_AUDIT_ACTIONS = {
    LocalAuditAction.save: "create",
    LocalAuditAction.read: "read",
    LocalAuditAction.delete: "delete",
    LocalAuditAction.upload_success: "update",
    LocalAuditAction.upload_failed: "update",
}


class BackendRequestError(Exception):
    """Categorized transport failure.

    Categories: "connection", "timeout", "http", "network".
    """

    def __init__(self, message: str, category: str, status_code: int | None = None) -> None:
        self.message = message
        self.category = category
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.category in ("connection", "timeout", "network"):
            return True
        return self.status_code in _RETRYABLE_STATUSES


def _is_retryable_upload_error(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and exc.retryable


def _parse_status(value: str | None) -> TranscriptionStatus:
    try:
        return TranscriptionStatus(value or "pending")
    except ValueError:
        logger.warning("Unknown transcription status %r; treating as pending", value)
        return TranscriptionStatus.pending


def _to_remote(row: dict) -> RemoteRecording:
    created = row.get("created_at")
    return RemoteRecording(
        id=str(row["id"]),
        session_id=str(row.get("session_id") or ""),
        file_name=row.get("file_name"),
        transcription_status=_parse_status(row.get("transcription_status")),
        transcript_id=row.get("transcript_id"),
        transcription_text=row.get("transcription_text"),
        transcription_error=row.get("transcription_error"),
        created_at=datetime.fromisoformat(created) if created else None,
    )


def _first_row(payload) -> dict | None:
    """PostgREST returns a list for ``return=representation``."""
    if isinstance(payload, list):
        return payload[0] if payload else None
    return payload or None


class HttpRecordingBackend(BaseRecordingBackend):
    """Recordings backend over HTTP.

    Args:
        settings: Application settings (URLs, key, retry limits).
        transport: Optional httpx transport override (tests use ``MockTransport``).
        upload_wait: Optional tenacity wait strategy for blob upload retries.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        upload_wait: wait_base | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        headers = {"Accept": "application/json"}
        if self._settings.backend_api_key:
            headers["Authorization"] = f"Bearer {self._settings.backend_api_key}"
            headers["apikey"] = self._settings.backend_api_key
        self._client = httpx.AsyncClient(
            base_url=self._settings.backend_url.rstrip("/"),
            timeout=self._settings.http_timeout,
            headers=headers,
            transport=transport,
        )
        self._upload_wait = upload_wait or wait_exponential(
            multiplier=1, min=1, max=self._settings.upload_retry_max_wait
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request, mapping httpx failures to ``BackendRequestError``."""
        try:
            resp = await self._client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.ConnectError as exc:
            raise BackendRequestError(f"Network error: {exc}", category="connection") from exc
        except httpx.TimeoutException as exc:
            raise BackendRequestError(f"Request timed out: {exc}", category="timeout") from exc
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text or str(exc)
            raise BackendRequestError(
                f"{exc.response.status_code}: {detail}",
                category="http",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendRequestError(f"Network error: {exc}", category="network") from exc

    # -- sessions --

    async def create_session(
        self, user: UserContext, title: str, patient_id: str | None = None
    ) -> str:
        body = {
            "user_id": user.user_id,
            "clinic_id": user.clinic_id,
            "patient_id": patient_id,
            "title": title,
            "status": "in_progress",
        }
        try:
            resp = await self._request(
                "POST", "/rest/v1/sessions", json=body, headers={"Prefer": "return=representation"}
            )
        except BackendRequestError as exc:
            raise PersistenceError(f"Failed to create session: {exc.message}") from exc
        row = _first_row(resp.json())
        if not row:
            raise PersistenceError("Failed to create session: No data returned")
        return str(row["id"])

    # -- recordings --

    async def create_recording_record(
        self, session_id: str, user_id: str, file_name: str
    ) -> RemoteRecording:
        body = {
            "session_id": session_id,
            "user_id": user_id,
            "file_path": f"recordings/temp/{now_ms()}-{file_name}",
            "file_name": file_name,
            "transcription_status": TranscriptionStatus.pending.value,
        }
        try:
            resp = await self._request(
                "POST", "/rest/v1/recordings", json=body, headers={"Prefer": "return=representation"}
            )
        except BackendRequestError as exc:
            raise PersistenceError(f"Failed to create recording: {exc.message}") from exc
        row = _first_row(resp.json())
        if not row:
            raise PersistenceError("Failed to create recording: No data returned")
        return _to_remote(row)

    async def _update_recording(self, recording_id: str, values: dict) -> None:
        try:
            await self._request(
                "PATCH", "/rest/v1/recordings", params={"id": f"eq.{recording_id}"}, json=values
            )
        except BackendRequestError as exc:
            raise PersistenceError(f"Failed to update recording: {exc.message}") from exc

    async def upload_audio_blob(self, recording_id: str, blob: AudioBlob, file_name: str) -> str:
        max_mb = self._settings.max_file_size_mb
        if blob.size > max_mb * 1024 * 1024:
            raise StorageError(
                f"Файл слишком большой ({format_megabytes(blob.size)} MB). "
                f"Максимальный размер: {max_mb} MB. "
                "Попробуйте записать более короткую сессию."
            )

        file_path = f"recordings/{recording_id}/{file_name}"
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.upload_retry_attempts),
            wait=self._upload_wait,
            retry=retry_if_exception(_is_retryable_upload_error),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                logger.info(
                    "Uploading %s (attempt %d/%d)",
                    file_path,
                    number,
                    self._settings.upload_retry_attempts,
                )
                await self._put_object(file_path, blob, upsert=number > 1)

        await self._update_recording(
            recording_id,
            {"file_path": file_path, "file_size_bytes": blob.size, "mime_type": blob.mime_type},
        )
        return file_path

    async def _put_object(self, file_path: str, blob: AudioBlob, upsert: bool) -> None:
        # Upsert on retries: a previous attempt may have partially landed
        try:
            await self._request(
                "POST",
                f"/storage/v1/object/{file_path}",
                content=blob.data,
                headers={"Content-Type": blob.mime_type, "x-upsert": "true" if upsert else "false"},
            )
        except BackendRequestError as exc:
            logger.warning("Upload of %s failed: %s", file_path, exc.message)
            raise StorageError(
                f"Failed to upload audio: {exc.message}", retryable=exc.retryable
            ) from exc

    async def update_recording_duration(self, recording_id: str, duration_seconds: float) -> None:
        await self._update_recording(recording_id, {"duration_seconds": round(duration_seconds)})

    async def delete_recording_record(self, recording_id: str) -> None:
        await self._update_recording(recording_id, {"deleted_at": datetime.now(UTC).isoformat()})

    async def list_processing_recordings(
        self, user_id: str, session_id: str | None = None
    ) -> list[RemoteRecording]:
        params = {
            "select": "id,session_id,file_name,transcription_status,transcript_id,created_at",
            "user_id": f"eq.{user_id}",
            "transcription_status": f"eq.{TranscriptionStatus.processing.value}",
            "deleted_at": "is.null",
        }
        if session_id:
            params["session_id"] = f"eq.{session_id}"
        try:
            resp = await self._request("GET", "/rest/v1/recordings", params=params)
        except BackendRequestError as exc:
            raise PersistenceError(f"Failed to list processing recordings: {exc.message}") from exc
        return [_to_remote(row) for row in resp.json()]

    # -- transcription --

    async def start_transcription(self, recording_id: str, api_base_url: str) -> None:
        try:
            await self._request(
                "POST",
                f"{api_base_url.rstrip('/')}/api/transcribe",
                json={"recordingId": recording_id},
            )
        except BackendRequestError as exc:
            raise TranscriptionStartError(f"Failed to start transcription: {exc.message}") from exc

    async def sync_transcription_status(self, recording_id: str, api_base_url: str) -> None:
        try:
            await self._request("POST", f"{api_base_url.rstrip('/')}/api/transcribe/{recording_id}/sync")
        except BackendRequestError as exc:
            raise TranscriptionPollError(f"Failed to sync transcription: {exc.message}") from exc

    async def get_transcription_status(
        self,
        recording_id: str,
        api_base_url: str | None = None,
        force_sync: bool = False,
    ) -> TranscriptionStatusResult:
        sync_error = None
        if force_sync and api_base_url:
            try:
                await self.sync_transcription_status(recording_id, api_base_url)
            except TranscriptionPollError as exc:
                sync_error = exc.detail
                logger.warning(
                    "Failed to sync transcription status for %s, falling back to stored status: %s",
                    recording_id,
                    exc.detail,
                )

        params = {
            "select": "transcription_status,transcription_text,transcription_error",
            "id": f"eq.{recording_id}",
            "deleted_at": "is.null",
        }
        try:
            resp = await self._request("GET", "/rest/v1/recordings", params=params)
        except BackendRequestError as exc:
            raise TranscriptionPollError(f"Failed to get recording status: {exc.message}") from exc
        row = _first_row(resp.json())
        if not row:
            raise TranscriptionPollError("Recording not found")

        return TranscriptionStatusResult(
            status=_parse_status(row.get("transcription_status")),
            transcription_text=row.get("transcription_text"),
            error=row.get("transcription_error") or None,
            sync_error=sync_error,
        )

    # -- audit --

    async def audit_local_operation(
        self,
        user: UserContext,
        action: LocalAuditAction,
        recording_id: str | None,
        details: dict | None = None,
    ) -> None:
        details = details or {}
        failed = action == LocalAuditAction.upload_failed
        body = {
            "user_id": user.user_id,
            "clinic_id": user.clinic_id,
            "action": _AUDIT_ACTIONS[action],
            "action_category": "recording",
            "resource_type": "recording",
            "resource_id": recording_id,
            "resource_name": details.get("file_name") or "Local Recording",
            # Audio of a therapy session is always PHI
            "phi_accessed": True,
            "phi_fields": ["audio_recording"],
            "success": not failed,
            "error_message": details.get("error") if failed else None,
            "new_values": {"action": action.value, **details} if details else None,
        }
        try:
            await self._request("POST", "/rest/v1/audit_logs", json=body)
        except BackendRequestError as exc:
            raise PersistenceError(f"Failed to write audit log: {exc.message}") from exc

    # -- health --

    async def check_connection(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except BackendRequestError as exc:
            logger.debug("Backend unreachable: %s", exc.message)
            return False

    async def close(self) -> None:
        await self._client.aclose()
