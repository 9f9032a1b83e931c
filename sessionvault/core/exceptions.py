"""
SessionVault exception hierarchy.

All application-specific exceptions inherit from SessionVaultError,
enabling centralized error handling in the API middleware layer.
"""

from datetime import UTC, datetime


class SessionVaultError(Exception):
    """Base exception for all SessionVault errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred",
        code: str = "SESSIONVAULT_ERROR",
        status_code: int = 500,
    ) -> None:
        self.detail = detail
        self.code = code
        self.status_code = status_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class DeviceUnavailableError(SessionVaultError):
    """Raised when the microphone cannot be opened (denied or missing)."""

    def __init__(self, detail: str = "Не удалось получить доступ к микрофону") -> None:
        super().__init__(detail=detail, code="DEVICE_UNAVAILABLE", status_code=503)


class RecorderStateError(SessionVaultError):
    """Raised when a transport control is invalid for the recorder state."""

    def __init__(self, action: str, status: str) -> None:
        super().__init__(
            detail=f"Cannot {action} while recorder is {status}",
            code="RECORDER_STATE",
            status_code=409,
        )


class RecordingAlreadyActiveError(SessionVaultError):
    """Raised when trying to start a recording while one is already active."""

    def __init__(self) -> None:
        super().__init__(
            detail="A recording is already active",
            code="RECORDING_ALREADY_ACTIVE",
            status_code=409,
        )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(SessionVaultError):
    """Raised when the local store or a backend row operation fails."""

    def __init__(self, detail: str = "Persistence failed") -> None:
        super().__init__(detail=detail, code="PERSISTENCE_ERROR", status_code=500)


class StorageError(SessionVaultError):
    """Raised when a blob upload to backend storage fails."""

    def __init__(self, detail: str = "Audio upload failed", retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(detail=detail, code="STORAGE_ERROR", status_code=502)


class LocalRecordingNotFoundError(SessionVaultError):
    """Raised when a local recording ID does not exist (or has expired)."""

    def __init__(self, local_id: str) -> None:
        super().__init__(
            detail=f"Local recording not found: {local_id}",
            code="LOCAL_RECORDING_NOT_FOUND",
            status_code=404,
        )


# ---------------------------------------------------------------------------
# Upload / transcription
# ---------------------------------------------------------------------------


class InvalidUploadError(SessionVaultError):
    """Raised when an upload request fails validation."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail, code="INVALID_UPLOAD", status_code=422)


class UploadNotFoundError(SessionVaultError):
    """Raised when a pending upload ID is not in the queue."""

    def __init__(self, upload_id: str) -> None:
        super().__init__(
            detail=f"Upload not found: {upload_id}",
            code="UPLOAD_NOT_FOUND",
            status_code=404,
        )


class TranscriptionStartError(SessionVaultError):
    """Raised when the transcription service rejects a start request."""

    def __init__(self, detail: str = "Transcription start failed") -> None:
        super().__init__(detail=detail, code="TRANSCRIPTION_START_ERROR", status_code=502)


class TranscriptionPollError(SessionVaultError):
    """Raised when a status read or sync call fails."""

    def __init__(self, detail: str = "Transcription status check failed") -> None:
        super().__init__(detail=detail, code="TRANSCRIPTION_POLL_ERROR", status_code=502)


class NotSignedInError(SessionVaultError):
    """Raised when an operation needs a signed-in user and there is none."""

    def __init__(self) -> None:
        super().__init__(
            detail="No signed-in user; mount the session first",
            code="NOT_SIGNED_IN",
            status_code=401,
        )
