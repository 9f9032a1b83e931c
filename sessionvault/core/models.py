"""
Domain records and Pydantic v2 request / response models.

Dataclasses carry in-process state between the capture, storage, upload
and transcription services; the Pydantic models are the control API's
wire format.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# Names produced by recording_file_name(prefix="checkpoint" | "hidden")
_SNAPSHOT_NAME = re.compile(r"^(checkpoint|hidden)-\d+\.\w+$")

# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------


class RecorderStatus(StrEnum):
    """States of the capture state machine."""

    idle = "idle"
    starting = "starting"
    recording = "recording"
    paused = "paused"
    stopping = "stopping"
    stopped = "stopped"
    error = "error"


class UploadStatus(StrEnum):
    """Lifecycle of a queued upload."""

    queued = "queued"
    uploading = "uploading"
    transcribing_start = "transcribing-start"
    succeeded = "succeeded"
    failed = "failed"


class TranscriptionStatus(StrEnum):
    """Remote transcription status of a recording row."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class NoticeKind(StrEnum):
    info = "info"
    warning = "warning"
    error = "error"


class NoticeCategory(StrEnum):
    """Which failure class a notice belongs to. Each maps to its own title."""

    capture = "capture"
    upload = "upload"
    transcription = "transcription"
    config = "config"
    storage = "storage"


class LocalAuditAction(StrEnum):
    """Operations on on-device audio that are written to the audit log."""

    save = "local_storage_save"
    read = "local_storage_read"
    delete = "local_storage_delete"
    upload_success = "local_storage_upload_success"
    upload_failed = "local_storage_upload_failed"


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapturedChunk:
    """One slice of encoded audio delivered by the device."""

    data: bytes
    mime_type: str
    sequence: int


@dataclass(frozen=True)
class AudioBlob:
    """An immutable audio payload plus its container type."""

    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class CaptureResult:
    """What ``AudioCapture.stop()`` resolves to.

    ``partial`` is set whenever the blob may be missing audio: the stop
    timed out before the final chunk arrived, or the duration cap was hit.
    """

    blob: AudioBlob | None
    duration_seconds: float
    partial: bool = False


# ---------------------------------------------------------------------------
# Local store
# ---------------------------------------------------------------------------


@dataclass
class LocalRecordingEntry:
    """A recording persisted on this device until the backend confirms it."""

    id: str
    file_name: str
    duration_seconds: float
    mime_type: str
    created_at: int  # epoch ms
    expires_at: int  # epoch ms
    session_id: str | None = None
    uploaded: bool = False
    upload_error: str | None = None
    remote_recording_id: str | None = None
    size_bytes: int = 0
    blob: AudioBlob | None = None  # None in metadata listings

    @property
    def is_checkpoint(self) -> bool:
        """True for periodic or on-hide snapshots of an active recording."""
        return _SNAPSHOT_NAME.match(self.file_name) is not None


# ---------------------------------------------------------------------------
# Upload queue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserContext:
    """The signed-in clinician."""

    user_id: str
    clinic_id: str


@dataclass
class PendingUpload:
    """One entry of the in-memory upload queue."""

    id: str
    blob: AudioBlob
    duration_seconds: float
    file_name: str
    session_id: str | None = None
    patient_id: str | None = None
    status: UploadStatus = UploadStatus.queued
    error: str | None = None
    warning: str | None = None
    local_recording_id: str | None = None
    remote_recording_id: str | None = None
    created_at: float = 0.0


# ---------------------------------------------------------------------------
# Remote recordings / transcription
# ---------------------------------------------------------------------------


@dataclass
class RemoteRecording:
    """Backend recording row, never cached past one polling cycle."""

    id: str
    session_id: str
    file_name: str | None = None
    transcription_status: TranscriptionStatus = TranscriptionStatus.pending
    transcript_id: str | None = None
    transcription_text: str | None = None
    transcription_error: str | None = None
    created_at: datetime | None = None


@dataclass
class TranscriptionStatusResult:
    """Outcome of one status read; ``sync_error`` is set if a pre-read sync failed."""

    status: TranscriptionStatus
    transcription_text: str | None = None
    error: str | None = None
    sync_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TranscriptionStatus.completed, TranscriptionStatus.failed)


@dataclass
class TrackedTranscription:
    """Polling state for one recording; ``timer`` is the next armed poll."""

    recording_id: str
    session_id: str
    started_at: float
    attempts: int = 0
    errors: int = 0
    timer: Any = field(default=None, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Lifecycle / recovery
# ---------------------------------------------------------------------------


@dataclass
class RecoveryBreadcrumb:
    """Metadata hint written when the process is about to go away.

    Contains no audio; the checkpoint in the local store is the only
    source of recoverable audio.
    """

    chunks_count: int
    mime_type: str
    session_id: str | None
    duration: float
    timestamp: int  # epoch ms

    def to_dict(self) -> dict:
        return {
            "chunksCount": self.chunks_count,
            "mimeType": self.mime_type,
            "sessionId": self.session_id,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryBreadcrumb":
        duration = float(data.get("duration", 0))
        return cls(
            chunks_count=int(data.get("chunksCount", 0)),
            mime_type=str(data.get("mimeType", "")),
            session_id=data.get("sessionId"),
            duration=duration if math.isfinite(duration) else 0.0,
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class Notice:
    """A user-facing message emitted by a background service."""

    kind: NoticeKind
    category: NoticeCategory
    title: str
    description: str = ""
    recording_id: str | None = None
    session_id: str | None = None


@dataclass
class RecoveryReport:
    """Everything the recovery dialog needs after a restart."""

    breadcrumb: RecoveryBreadcrumb | None
    orphans: list[LocalRecordingEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
# API: Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str = "ok"
    version: str = "0.1.0"
    timestamp: datetime


# ---------------------------------------------------------------------------
# API: Session / recorder
# ---------------------------------------------------------------------------


class MountRequest(BaseModel):
    """POST /session/mount request body."""

    user_id: str = Field(min_length=1)
    clinic_id: str = Field(min_length=1)


class StartRecordingRequest(BaseModel):
    """POST /recorder/start request body."""

    session_id: str | None = None
    patient_id: str | None = None


class UploadResponse(BaseModel):
    """A pending upload as shown in the uploads panel."""

    id: str
    status: UploadStatus
    file_name: str
    duration_seconds: float
    size_bytes: int
    session_id: str | None = None
    error: str | None = None
    warning: str | None = None
    local_recording_id: str | None = None
    remote_recording_id: str | None = None


class UploadCounts(BaseModel):
    queued: int = 0
    active: int = 0
    failed: int = 0


class RecorderSnapshotResponse(BaseModel):
    """GET /recorder response: everything the recording screen renders."""

    status: RecorderStatus
    session_id: str | None = None
    duration_seconds: float = 0.0
    was_partial_save: bool = False
    error: str | None = None
    uploads: UploadCounts = Field(default_factory=UploadCounts)
    tracked_transcriptions: list[str] = Field(default_factory=list)
    config_warning: str | None = None


class StopRecordingResponse(BaseModel):
    """POST /recorder/stop response."""

    upload: UploadResponse | None = None
    partial: bool = False
    duration_seconds: float = 0.0


class SuspendResponse(BaseModel):
    """POST /lifecycle/suspend response."""

    should_prompt: bool


# ---------------------------------------------------------------------------
# API: Recovery
# ---------------------------------------------------------------------------


class LocalRecordingResponse(BaseModel):
    """Metadata of an orphaned local recording."""

    id: str
    file_name: str
    duration_seconds: float
    mime_type: str
    size_bytes: int
    created_at: int
    expires_at: int
    session_id: str | None = None
    upload_error: str | None = None
    is_checkpoint: bool = False


class BreadcrumbResponse(BaseModel):
    chunks_count: int
    mime_type: str
    session_id: str | None = None
    duration: float
    timestamp: int


class RecoveryResponse(BaseModel):
    """GET /recovery response."""

    breadcrumb: BreadcrumbResponse | None = None
    orphans: list[LocalRecordingResponse] = Field(default_factory=list)


class TranscriptionStatusResponse(BaseModel):
    """POST /recordings/{id}/sync response."""

    recording_id: str
    status: TranscriptionStatus
    transcription_text: str | None = None
    error: str | None = None
    sync_error: str | None = None
