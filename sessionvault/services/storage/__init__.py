"""
Storage module - On-device database for recordings awaiting upload.
"""

from sessionvault.services.storage.database import (
    Base,
    build_engine,
    close_db,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from sessionvault.services.storage.audit import LocalRecordingAudit
from sessionvault.services.storage.models_db import LocalRecording
from sessionvault.services.storage.repository import LocalRecordingStore

__all__ = [
    "Base",
    "build_engine",
    "LocalRecording",
    "LocalRecordingAudit",
    "LocalRecordingStore",
    "close_db",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
]
