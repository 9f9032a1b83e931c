"""
SQLAlchemy ORM models for the on-device recording store.

Tables: ``local_recordings``.
"""

from datetime import datetime

from sqlalchemy import BigInteger, Index, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sessionvault.services.storage.database import Base


class LocalRecording(Base):
    """A captured recording kept on this device until the backend has it."""

    __tablename__ = "local_recordings"
    __table_args__ = (Index("ix_local_recordings_pending", "uploaded", "expires_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    blob: Mapped[bytes] = mapped_column(LargeBinary)
    file_name: Mapped[str] = mapped_column(String(255))
    duration_seconds: Mapped[float] = mapped_column(default=0.0)
    mime_type: Mapped[str] = mapped_column(String(100), default="audio/webm")
    size_bytes: Mapped[int] = mapped_column(default=0)
    created_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    expires_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    uploaded: Mapped[bool] = mapped_column(default=False)
    upload_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_recording_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    uploaded_at: Mapped[datetime | None] = mapped_column(nullable=True)
