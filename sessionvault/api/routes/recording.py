"""
Recording control endpoints.

Exposes the orchestrator to the UI shell: session mount, transport
controls, lifecycle hooks, the recovery dialog, the uploads panel and
manual transcription actions. All endpoints delegate to
``SessionRecordingOrchestrator`` / ``UploadQueue`` — no business logic here.
"""

import logging

from fastapi import APIRouter, Depends, Response

from sessionvault.api.dependencies import get_orchestrator, get_queue
from sessionvault.core.models import (
    BreadcrumbResponse,
    LocalRecordingEntry,
    LocalRecordingResponse,
    MountRequest,
    PendingUpload,
    RecorderSnapshotResponse,
    RecoveryResponse,
    StartRecordingRequest,
    StopRecordingResponse,
    SuspendResponse,
    TranscriptionStatusResponse,
    UploadCounts,
    UploadResponse,
    UserContext,
)
from sessionvault.services.orchestrator import SessionRecordingOrchestrator
from sessionvault.services.upload.queue import UploadQueue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["recording"])


def _upload_response(upload: PendingUpload) -> UploadResponse:
    """Convert a queue entry to its API response model."""
    return UploadResponse(
        id=upload.id,
        status=upload.status,
        file_name=upload.file_name,
        duration_seconds=upload.duration_seconds,
        size_bytes=upload.blob.size,
        session_id=upload.session_id,
        error=upload.error,
        warning=upload.warning,
        local_recording_id=upload.local_recording_id,
        remote_recording_id=upload.remote_recording_id,
    )


def _snapshot_response(orchestrator: SessionRecordingOrchestrator) -> RecorderSnapshotResponse:
    snap = orchestrator.snapshot()
    return RecorderSnapshotResponse(
        status=snap.status,
        session_id=snap.session_id,
        duration_seconds=round(snap.duration_seconds, 1),
        was_partial_save=snap.was_partial_save,
        error=snap.error,
        uploads=UploadCounts(**snap.upload_counts),
        tracked_transcriptions=snap.tracked_transcriptions,
        config_warning=snap.config_warning,
    )


def _local_response(entry: LocalRecordingEntry) -> LocalRecordingResponse:
    return LocalRecordingResponse(
        id=entry.id,
        file_name=entry.file_name,
        duration_seconds=entry.duration_seconds,
        mime_type=entry.mime_type,
        size_bytes=entry.size_bytes,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
        session_id=entry.session_id,
        upload_error=entry.upload_error,
        is_checkpoint=entry.is_checkpoint,
    )


# -- session --


@router.post("/session/mount", response_model=RecorderSnapshotResponse)
async def mount_session(
    body: MountRequest,
    orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator),
):
    """Bind the pipeline to the signed-in user."""
    await orchestrator.mount(UserContext(user_id=body.user_id, clinic_id=body.clinic_id))
    return _snapshot_response(orchestrator)


@router.post("/session/unmount", status_code=204)
async def unmount_session(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    await orchestrator.unmount()
    return Response(status_code=204)


@router.post("/session/sign-out", status_code=204)
async def sign_out(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    """Unmount and wipe local recordings."""
    await orchestrator.sign_out()
    return Response(status_code=204)


# -- recorder --


@router.get("/recorder", response_model=RecorderSnapshotResponse)
async def get_recorder(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    return _snapshot_response(orchestrator)


@router.post("/recorder/start", response_model=RecorderSnapshotResponse)
async def start_recording(
    body: StartRecordingRequest | None = None,
    orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.start_recording(
        session_id=body.session_id if body else None,
        patient_id=body.patient_id if body else None,
    )
    return _snapshot_response(orchestrator)


@router.post("/recorder/pause", response_model=RecorderSnapshotResponse)
async def pause_recording(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    orchestrator.pause_recording()
    return _snapshot_response(orchestrator)


@router.post("/recorder/resume", response_model=RecorderSnapshotResponse)
async def resume_recording(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    orchestrator.resume_recording()
    return _snapshot_response(orchestrator)


@router.post("/recorder/stop", response_model=StopRecordingResponse)
async def stop_recording(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    """Stop capture and queue the recording for upload."""
    upload, result = await orchestrator.stop_recording()
    return StopRecordingResponse(
        upload=_upload_response(upload) if upload else None,
        partial=result.partial,
        duration_seconds=result.duration_seconds,
    )


@router.post("/recorder/cancel", response_model=RecorderSnapshotResponse)
async def cancel_recording(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    await orchestrator.cancel_recording()
    return _snapshot_response(orchestrator)


@router.post("/recorder/checkpoint")
async def checkpoint(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    return {"checkpoint_id": await orchestrator.checkpoint()}


# -- lifecycle --


@router.post("/lifecycle/hidden", status_code=204)
async def lifecycle_hidden(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    await orchestrator.on_hidden()
    return Response(status_code=204)


@router.post("/lifecycle/suspend", response_model=SuspendResponse)
async def lifecycle_suspend(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    return SuspendResponse(should_prompt=orchestrator.on_suspend_requested())


@router.post("/lifecycle/online", status_code=204)
async def lifecycle_online(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    await orchestrator.on_online()
    return Response(status_code=204)


# -- recovery --


@router.get("/recovery", response_model=RecoveryResponse)
async def get_recovery(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    """Breadcrumb hint and orphaned local recordings for the recovery dialog."""
    report = await orchestrator.check_recovery()
    crumb = report.breadcrumb
    return RecoveryResponse(
        breadcrumb=BreadcrumbResponse(
            chunks_count=crumb.chunks_count,
            mime_type=crumb.mime_type,
            session_id=crumb.session_id,
            duration=crumb.duration,
            timestamp=crumb.timestamp,
        )
        if crumb
        else None,
        orphans=[_local_response(e) for e in report.orphans],
    )


@router.post("/recovery/{local_id}/retry", response_model=UploadResponse | None)
async def retry_orphan(
    local_id: str, orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)
):
    upload = await orchestrator.retry_orphan(local_id)
    return _upload_response(upload) if upload else None


@router.delete("/recovery/{local_id}", status_code=204)
async def dismiss_orphan(
    local_id: str, orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.dismiss_orphan(local_id)
    return Response(status_code=204)


@router.delete("/recovery", status_code=204)
async def dismiss_breadcrumb(orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)):
    orchestrator.dismiss_breadcrumb()
    return Response(status_code=204)


# -- uploads --


@router.get("/uploads", response_model=list[UploadResponse])
async def list_uploads(queue: UploadQueue = Depends(get_queue)):
    return [_upload_response(u) for u in queue.pending_uploads]


@router.post("/uploads/{upload_id}/retry", response_model=UploadResponse)
async def retry_upload(upload_id: str, queue: UploadQueue = Depends(get_queue)):
    return _upload_response(queue.retry_upload(upload_id))


@router.delete("/uploads/{upload_id}")
async def cancel_upload(upload_id: str, queue: UploadQueue = Depends(get_queue)):
    """Cancel an upload that has not started yet."""
    return {"cancelled": await queue.cancel_upload(upload_id)}


# -- transcription --


@router.post("/recordings/{recording_id}/sync", response_model=TranscriptionStatusResponse)
async def sync_recording(
    recording_id: str, orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.sync_recording(recording_id)
    return TranscriptionStatusResponse(
        recording_id=recording_id,
        status=result.status,
        transcription_text=result.transcription_text,
        error=result.error,
        sync_error=result.sync_error,
    )


@router.post("/recordings/{recording_id}/transcription/retry", status_code=202)
async def retry_transcription(
    recording_id: str,
    session_id: str,
    orchestrator: SessionRecordingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.retry_transcription(recording_id, session_id)
    return {"recording_id": recording_id, "tracking": True}
