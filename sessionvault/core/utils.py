"""Shared utility functions for SessionVault."""

import secrets
import string
import time
from datetime import datetime

_ID_ALPHABET = string.ascii_lowercase + string.digits

_MIME_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/l16": "pcm",
}


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_local_id(timestamp_ms: int | None = None) -> str:
    """Return a local recording id of the form ``local-<ms>-<9 chars>``."""
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"local-{ts}-{suffix}"


def extension_for(mime_type: str) -> str:
    """Map a MIME type (parameters ignored) to a file extension."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base, "webm")


def recording_file_name(mime_type: str, prefix: str = "recording", timestamp_ms: int | None = None) -> str:
    """Build ``<prefix>-<ms>.<ext>``; checkpoint markers go in *prefix*."""
    ts = now_ms() if timestamp_ms is None else timestamp_ms
    return f"{prefix}-{ts}.{extension_for(mime_type)}"


def session_title(when: datetime) -> str:
    """Default title for a session created on the fly for an upload."""
    return f"Сессия {when.strftime('%d.%m.%Y %H:%M')}"


def format_megabytes(size_bytes: int) -> float:
    """Size in MB rounded to one decimal place."""
    return round(size_bytes / 1024 / 1024, 1)
