"""
Abstract base class for the durable recordings backend.

The upload queue, the transcription tracker and the orchestrator only
talk to this interface, so the HTTP client can be swapped for a fake in
tests or for another backend.
"""

from abc import ABC, abstractmethod

from sessionvault.core.models import (
    AudioBlob,
    LocalAuditAction,
    RemoteRecording,
    TranscriptionStatusResult,
    UserContext,
)


class BaseRecordingBackend(ABC):
    """Interface that every recordings backend must implement."""

    @abstractmethod
    async def create_session(
        self, user: UserContext, title: str, patient_id: str | None = None
    ) -> str:
        """Create a therapy session row and return its id.

        Raises:
            PersistenceError: The row could not be created.
        """

    @abstractmethod
    async def create_recording_record(
        self, session_id: str, user_id: str, file_name: str
    ) -> RemoteRecording:
        """Create a recording row in ``pending`` transcription state.

        Raises:
            PersistenceError: The row could not be created.
        """

    @abstractmethod
    async def upload_audio_blob(
        self, recording_id: str, blob: AudioBlob, file_name: str
    ) -> str:
        """Store the audio for *recording_id* and return its storage path.

        Implementations retry transient failures themselves.

        Raises:
            StorageError: Upload failed after retries, or was rejected.
        """

    @abstractmethod
    async def update_recording_duration(self, recording_id: str, duration_seconds: float) -> None:
        """Raises PersistenceError on failure."""

    @abstractmethod
    async def start_transcription(self, recording_id: str, api_base_url: str) -> None:
        """Ask the transcription service to start.

        Raises:
            TranscriptionStartError: The service rejected the request.
        """

    @abstractmethod
    async def get_transcription_status(
        self,
        recording_id: str,
        api_base_url: str | None = None,
        force_sync: bool = False,
    ) -> TranscriptionStatusResult:
        """Read the recording's transcription status.

        With *force_sync* the status is first synced from the transcription
        service; a sync failure is reported in ``sync_error`` and the stored
        status is still returned.

        Raises:
            TranscriptionPollError: The status could not be read.
        """

    @abstractmethod
    async def sync_transcription_status(self, recording_id: str, api_base_url: str) -> None:
        """Raises TranscriptionPollError on failure."""

    @abstractmethod
    async def delete_recording_record(self, recording_id: str) -> None:
        """Soft-delete a recording row. Raises PersistenceError on failure."""

    @abstractmethod
    async def list_processing_recordings(
        self, user_id: str, session_id: str | None = None
    ) -> list[RemoteRecording]:
        """Recordings of *user_id* whose transcription is still processing."""

    @abstractmethod
    async def audit_local_operation(
        self,
        user: UserContext,
        action: LocalAuditAction,
        recording_id: str | None,
        details: dict | None = None,
    ) -> None:
        """Write an audit log entry for an operation on on-device audio.

        Raises:
            PersistenceError: The entry could not be written.
        """

    @abstractmethod
    async def check_connection(self) -> bool:
        """Return True if the backend is reachable."""

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
