"""Tests for HttpRecordingBackend using httpx.MockTransport (no network)."""

import json

import httpx
import pytest
from tenacity import wait_none

from sessionvault.core.exceptions import (
    PersistenceError,
    StorageError,
    TranscriptionPollError,
    TranscriptionStartError,
)
from sessionvault.core.models import AudioBlob, LocalAuditAction, TranscriptionStatus, UserContext
from sessionvault.services.backend.http import BackendRequestError, HttpRecordingBackend


class Recorder:
    """MockTransport handler that replays scripted responses and logs requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _backend(settings, handler) -> HttpRecordingBackend:
    return HttpRecordingBackend(
        settings=settings, transport=httpx.MockTransport(handler), upload_wait=wait_none()
    )


@pytest.fixture
def blob():
    return AudioBlob(data=b"\x1a\x45\xdf\xa3" * 100, mime_type="audio/webm;codecs=opus")


# ---------------------------------------------------------------------------
# Error categorization
# ---------------------------------------------------------------------------


class TestBackendRequestError:
    def test_connection_is_retryable(self):
        assert BackendRequestError("x", "connection").retryable

    def test_server_error_is_retryable(self):
        assert BackendRequestError("x", "http", status_code=503).retryable

    def test_client_error_is_not_retryable(self):
        assert not BackendRequestError("x", "http", status_code=403).retryable


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


class TestRows:
    async def test_create_session_returns_id(self, settings):
        handler = Recorder(httpx.Response(201, json=[{"id": "sess-1"}]))
        backend = _backend(settings, handler)

        session_id = await backend.create_session(UserContext("u", "c"), "Сессия 01.01.2025 10:00")

        assert session_id == "sess-1"
        sent = json.loads(handler.requests[0].content)
        assert sent["status"] == "in_progress"
        assert sent["clinic_id"] == "c"
        assert handler.requests[0].headers["Authorization"] == "Bearer test-key"
        await backend.close()

    async def test_create_recording_record_pending(self, settings):
        handler = Recorder(
            httpx.Response(
                201, json=[{"id": "rec-1", "session_id": "s", "transcription_status": "pending"}]
            )
        )
        backend = _backend(settings, handler)

        rec = await backend.create_recording_record("s", "u", "recording-1.webm")

        assert rec.id == "rec-1"
        assert rec.transcription_status == TranscriptionStatus.pending
        await backend.close()

    async def test_empty_insert_response_raises(self, settings):
        backend = _backend(settings, Recorder(httpx.Response(201, json=[])))
        with pytest.raises(PersistenceError, match="No data returned"):
            await backend.create_recording_record("s", "u", "f.webm")
        await backend.close()

    async def test_list_processing_filters_by_session(self, settings):
        handler = Recorder(
            httpx.Response(200, json=[{"id": "r1", "session_id": "s1", "transcription_status": "processing"}])
        )
        backend = _backend(settings, handler)

        rows = await backend.list_processing_recordings("u", session_id="s1")

        assert [r.id for r in rows] == ["r1"]
        assert handler.requests[0].url.params["session_id"] == "eq.s1"
        await backend.close()


# ---------------------------------------------------------------------------
# Blob upload
# ---------------------------------------------------------------------------


class TestUploadAudioBlob:
    async def test_retries_server_errors_then_succeeds(self, settings, blob):
        handler = Recorder(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"Key": "k"}),
            httpx.Response(204),
        )
        backend = _backend(settings, handler)

        path = await backend.upload_audio_blob("rec-1", blob, "recording-1.webm")

        assert path == "recordings/rec-1/recording-1.webm"
        uploads = [r for r in handler.requests if "/storage/" in r.url.path]
        assert len(uploads) == 3
        assert [r.headers["x-upsert"] for r in uploads] == ["false", "true", "true"]
        assert uploads[0].content == blob.data
        await backend.close()

    async def test_gives_up_after_three_attempts(self, settings, blob):
        handler = Recorder(httpx.Response(500))
        backend = _backend(settings, handler)

        with pytest.raises(StorageError) as exc_info:
            await backend.upload_audio_blob("rec-1", blob, "f.webm")

        assert exc_info.value.retryable
        assert len(handler.requests) == 3
        await backend.close()

    async def test_client_error_is_not_retried(self, settings, blob):
        handler = Recorder(httpx.Response(403, text="forbidden"))
        backend = _backend(settings, handler)

        with pytest.raises(StorageError):
            await backend.upload_audio_blob("rec-1", blob, "f.webm")

        assert len(handler.requests) == 1
        await backend.close()

    async def test_connect_error_is_retried(self, settings, blob):
        handler = Recorder(
            httpx.ConnectError("refused"),
            httpx.Response(200),
            httpx.Response(204),
        )
        backend = _backend(settings, handler)

        await backend.upload_audio_blob("rec-1", blob, "f.webm")

        assert len(handler.requests) == 3
        await backend.close()

    async def test_oversized_blob_rejected_without_request(self, settings):
        settings.max_file_size_mb = 0
        handler = Recorder(httpx.Response(200))
        backend = _backend(settings, handler)

        with pytest.raises(StorageError, match="слишком большой"):
            await backend.upload_audio_blob("rec-1", AudioBlob(b"x", "audio/webm"), "f.webm")

        assert handler.requests == []
        await backend.close()


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


class TestTranscription:
    async def test_start_posts_to_transcription_api(self, settings):
        handler = Recorder(httpx.Response(202))
        backend = _backend(settings, handler)

        await backend.start_transcription("rec-1", "http://transcribe.test/")

        req = handler.requests[0]
        assert str(req.url) == "http://transcribe.test/api/transcribe"
        assert json.loads(req.content) == {"recordingId": "rec-1"}
        await backend.close()

    async def test_start_failure_raises(self, settings):
        backend = _backend(settings, Recorder(httpx.Response(500)))
        with pytest.raises(TranscriptionStartError):
            await backend.start_transcription("rec-1", "http://transcribe.test")
        await backend.close()

    async def test_status_read(self, settings):
        handler = Recorder(
            httpx.Response(200, json=[{"transcription_status": "completed", "transcription_text": "hi"}])
        )
        backend = _backend(settings, handler)

        result = await backend.get_transcription_status("rec-1")

        assert result.status == TranscriptionStatus.completed
        assert result.transcription_text == "hi"
        assert result.is_terminal
        await backend.close()

    async def test_force_sync_failure_falls_back_to_stored_status(self, settings):
        handler = Recorder(
            httpx.Response(500, text="sync down"),
            httpx.Response(200, json=[{"transcription_status": "processing"}]),
        )
        backend = _backend(settings, handler)

        result = await backend.get_transcription_status(
            "rec-1", "http://transcribe.test", force_sync=True
        )

        assert result.status == TranscriptionStatus.processing
        assert result.sync_error is not None
        assert handler.requests[0].url.path == "/api/transcribe/rec-1/sync"
        await backend.close()

    async def test_missing_row_raises(self, settings):
        backend = _backend(settings, Recorder(httpx.Response(200, json=[])))
        with pytest.raises(TranscriptionPollError):
            await backend.get_transcription_status("rec-x")
        await backend.close()

    async def test_unknown_status_treated_as_pending(self, settings):
        backend = _backend(
            settings, Recorder(httpx.Response(200, json=[{"transcription_status": "weird"}]))
        )
        result = await backend.get_transcription_status("rec-1")
        assert result.status == TranscriptionStatus.pending
        await backend.close()


class TestCheckConnection:
    async def test_online(self, settings):
        backend = _backend(settings, Recorder(httpx.Response(200, json={"status": "ok"})))
        assert await backend.check_connection() is True
        await backend.close()

    async def test_offline(self, settings):
        backend = _backend(settings, Recorder(httpx.ConnectError("down")))
        assert await backend.check_connection() is False
        await backend.close()


class TestAuditLog:
    async def test_upload_failure_entry(self, settings):
        handler = Recorder(httpx.Response(201))
        backend = _backend(settings, handler)

        await backend.audit_local_operation(
            UserContext("u", "c"),
            LocalAuditAction.upload_failed,
            "rec-1",
            {"file_name": "recording-1.webm", "error": "Network error"},
        )

        req = handler.requests[0]
        assert req.url.path == "/rest/v1/audit_logs"
        sent = json.loads(req.content)
        assert sent["action"] == "update"
        assert sent["resource_id"] == "rec-1"
        assert sent["resource_name"] == "recording-1.webm"
        assert sent["phi_accessed"] is True
        assert sent["success"] is False
        assert sent["error_message"] == "Network error"
        assert sent["new_values"]["action"] == "local_storage_upload_failed"
        await backend.close()

    async def test_save_entry_without_details(self, settings):
        handler = Recorder(httpx.Response(201))
        backend = _backend(settings, handler)

        await backend.audit_local_operation(UserContext("u", "c"), LocalAuditAction.save, "local-1")

        sent = json.loads(handler.requests[0].content)
        assert sent["action"] == "create"
        assert sent["success"] is True
        assert sent["error_message"] is None
        assert sent["new_values"] is None
        assert sent["resource_name"] == "Local Recording"
        await backend.close()

    async def test_rejected_entry_raises(self, settings):
        backend = _backend(settings, Recorder(httpx.Response(403, text="rls")))
        with pytest.raises(PersistenceError, match="audit log"):
            await backend.audit_local_operation(
                UserContext("u", "c"), LocalAuditAction.read, "local-1"
            )
        await backend.close()
