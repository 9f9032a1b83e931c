"""Integration tests for the recording control API."""

from sessionvault.core.exceptions import DeviceUnavailableError
from sessionvault.core.models import AudioBlob, TranscriptionStatus, TranscriptionStatusResult

# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


async def test_mount_returns_idle_snapshot(async_client):
    resp = await async_client.post(
        "/api/v1/session/mount", json={"user_id": "user-1", "clinic_id": "clinic-1"}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "idle"
    assert body["uploads"] == {"queued": 0, "active": 0, "failed": 0}
    assert body["config_warning"] is None


async def test_start_without_mount_is_401(async_client):
    resp = await async_client.post("/api/v1/recorder/start", json={"session_id": "s-1"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "NOT_SIGNED_IN"


async def test_sign_out_wipes_store(mounted_client, store):
    await store.save(AudioBlob(b"x", "audio/webm"), "recording-1.webm", 1.0)

    resp = await mounted_client.post("/api/v1/session/sign-out")

    assert resp.status_code == 204
    assert await store.usage() == (0, 0)


# ---------------------------------------------------------------------------
# Recorder lifecycle
# ---------------------------------------------------------------------------


async def test_record_pause_resume_stop(mounted_client, audio_source, upload_queue, backend):
    """start -> pause -> resume -> stop queues one upload that succeeds."""
    resp = await mounted_client.post("/api/v1/recorder/start", json={"session_id": "s-1"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "recording"
    assert resp.json()["session_id"] == "s-1"

    audio_source.emit(b"chunk-1")
    resp = await mounted_client.post("/api/v1/recorder/pause")
    assert resp.json()["status"] == "paused"
    resp = await mounted_client.post("/api/v1/recorder/resume")
    assert resp.json()["status"] == "recording"
    audio_source.emit(b"chunk-2")

    resp = await mounted_client.post("/api/v1/recorder/stop")
    assert resp.status_code == 200
    body = resp.json()
    assert body["partial"] is False
    assert body["upload"]["size_bytes"] == len(b"chunk-1chunk-2")
    assert body["upload"]["local_recording_id"].startswith("local-")

    await upload_queue.join()
    resp = await mounted_client.get("/api/v1/uploads")
    [upload] = resp.json()
    assert upload["status"] == "succeeded"
    assert upload["remote_recording_id"] == "rec-1"
    backend.start_transcription.assert_awaited_once()


async def test_double_start_is_409(mounted_client):
    await mounted_client.post("/api/v1/recorder/start")
    resp = await mounted_client.post("/api/v1/recorder/start")
    assert resp.status_code == 409
    assert resp.json()["code"] == "RECORDING_ALREADY_ACTIVE"


async def test_pause_when_idle_is_409(mounted_client):
    resp = await mounted_client.post("/api/v1/recorder/pause")
    assert resp.status_code == 409
    assert resp.json()["code"] == "RECORDER_STATE"


async def test_device_unavailable_is_503(mounted_client, audio_source):
    audio_source.open_error = DeviceUnavailableError("Микрофон не найден.")

    resp = await mounted_client.post("/api/v1/recorder/start")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "Микрофон не найден."
    snap = (await mounted_client.get("/api/v1/recorder")).json()
    assert snap["status"] == "error"


async def test_cancel_discards_recording(mounted_client, audio_source, store):
    await mounted_client.post("/api/v1/recorder/start")
    audio_source.emit(b"discard-me")
    await mounted_client.post("/api/v1/recorder/checkpoint")

    resp = await mounted_client.post("/api/v1/recorder/cancel")

    assert resp.json()["status"] == "idle"
    assert await store.usage() == (0, 0)


async def test_manual_checkpoint(mounted_client, audio_source):
    await mounted_client.post("/api/v1/recorder/start")
    audio_source.emit(b"abc")

    resp = await mounted_client.post("/api/v1/recorder/checkpoint")

    assert resp.json()["checkpoint_id"].startswith("local-")


# ---------------------------------------------------------------------------
# Lifecycle and recovery
# ---------------------------------------------------------------------------


async def test_suspend_then_recovery_dialog(mounted_client, audio_source, scheduler):
    await mounted_client.post("/api/v1/recorder/start", json={"session_id": "s-1"})
    audio_source.emit(b"a")
    audio_source.emit(b"b")

    resp = await mounted_client.post("/api/v1/lifecycle/suspend")
    assert resp.json() == {"should_prompt": True}
    await scheduler.advance(0)

    # Simulate the restart: the recorder is gone but the local store remains
    await mounted_client.post("/api/v1/session/unmount")
    await mounted_client.post(
        "/api/v1/session/mount", json={"user_id": "user-1", "clinic_id": "clinic-1"}
    )

    resp = await mounted_client.get("/api/v1/recovery")
    body = resp.json()
    assert body["breadcrumb"]["chunks_count"] == 2
    assert body["breadcrumb"]["session_id"] == "s-1"
    assert len(body["orphans"]) >= 1
    assert all(o["is_checkpoint"] for o in body["orphans"])


async def test_suspend_when_idle(mounted_client):
    resp = await mounted_client.post("/api/v1/lifecycle/suspend")
    assert resp.json() == {"should_prompt": False}


async def test_retry_and_dismiss_orphans(mounted_client, store, upload_queue):
    keep = await store.save(AudioBlob(b"k" * 10, "audio/webm"), "checkpoint-1.webm", 5.0, "s-1")
    drop = await store.save(AudioBlob(b"d" * 10, "audio/webm"), "checkpoint-2.webm", 5.0, "s-1")

    resp = await mounted_client.post(f"/api/v1/recovery/{keep}/retry")
    assert resp.status_code == 200
    assert resp.json()["local_recording_id"] == keep

    resp = await mounted_client.delete(f"/api/v1/recovery/{drop}")
    assert resp.status_code == 204

    await upload_queue.join()
    resp = await mounted_client.get("/api/v1/recovery")
    assert resp.json()["orphans"] == []


async def test_dismiss_unknown_orphan_is_404(mounted_client):
    resp = await mounted_client.delete("/api/v1/recovery/local-0-missing00")
    assert resp.status_code == 404
    assert resp.json()["code"] == "LOCAL_RECORDING_NOT_FOUND"


async def test_dismiss_breadcrumb(mounted_client, breadcrumbs, audio_source):
    await mounted_client.post("/api/v1/recorder/start")
    await mounted_client.post("/api/v1/lifecycle/suspend")

    resp = await mounted_client.delete("/api/v1/recovery")

    assert resp.status_code == 204
    assert breadcrumbs.read() is None


async def test_online_retries_failed_local_recordings(mounted_client, store, upload_queue):
    local_id = await store.save(AudioBlob(b"x" * 10, "audio/webm"), "recording-1.webm", 5.0, "s-1")
    await store.mark_upload_failed(local_id, "Network error")

    resp = await mounted_client.post("/api/v1/lifecycle/online")
    await upload_queue.join()

    assert resp.status_code == 204
    assert await store.list_unuploaded() == []


async def test_hidden_checkpoints_active_recording(mounted_client, audio_source, store):
    await mounted_client.post("/api/v1/recorder/start")
    audio_source.emit(b"abc")

    resp = await mounted_client.post("/api/v1/lifecycle/hidden")

    assert resp.status_code == 204
    [entry] = await store.list_unuploaded()
    assert entry.file_name.startswith("hidden-")


# ---------------------------------------------------------------------------
# Uploads panel
# ---------------------------------------------------------------------------


async def test_retry_unknown_upload_is_404(mounted_client):
    resp = await mounted_client.post("/api/v1/uploads/upload-missing/retry")
    assert resp.status_code == 404
    assert resp.json()["code"] == "UPLOAD_NOT_FOUND"


async def test_failed_upload_can_be_retried(mounted_client, audio_source, upload_queue, backend):
    from sessionvault.core.exceptions import StorageError

    backend.upload_audio_blob.side_effect = [StorageError("Network error", retryable=True), "path"]
    await mounted_client.post("/api/v1/recorder/start", json={"session_id": "s-1"})
    audio_source.emit(b"abc")
    upload_id = (await mounted_client.post("/api/v1/recorder/stop")).json()["upload"]["id"]
    await upload_queue.join()

    failed = (await mounted_client.get("/api/v1/uploads")).json()[0]
    assert failed["status"] == "failed"
    assert failed["error"] == "Network error"

    resp = await mounted_client.post(f"/api/v1/uploads/{upload_id}/retry")
    assert resp.status_code == 200
    await upload_queue.join()

    assert upload_queue.get(upload_id).status == "succeeded"
    assert backend.create_recording_record.await_count == 1


async def test_cancel_started_upload_refused(mounted_client, audio_source, upload_queue):
    await mounted_client.post("/api/v1/recorder/start", json={"session_id": "s-1"})
    audio_source.emit(b"abc")
    upload_id = (await mounted_client.post("/api/v1/recorder/stop")).json()["upload"]["id"]
    await upload_queue.join()

    resp = await mounted_client.delete(f"/api/v1/uploads/{upload_id}")

    assert resp.json() == {"cancelled": False}


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


async def test_sync_recording(mounted_client, backend):
    backend.get_transcription_status.return_value = TranscriptionStatusResult(
        status=TranscriptionStatus.completed, transcription_text="Текст"
    )

    resp = await mounted_client.post("/api/v1/recordings/rec-1/sync")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["transcription_text"] == "Текст"


async def test_retry_transcription_tracks_recording(mounted_client, backend):
    resp = await mounted_client.post(
        "/api/v1/recordings/rec-7/transcription/retry", params={"session_id": "s-1"}
    )

    assert resp.status_code == 202
    assert resp.json() == {"recording_id": "rec-7", "tracking": True}
    snap = (await mounted_client.get("/api/v1/recorder")).json()
    assert snap["tracked_transcriptions"] == ["rec-7"]


async def test_mount_validation_error_envelope(async_client):
    """A malformed body is reported as VALIDATION_ERROR with a timestamp."""
    resp = await async_client.post("/api/v1/session/mount", json={"user_id": ""})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "timestamp" in body
