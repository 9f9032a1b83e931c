"""
Durable on-device store for recordings not yet confirmed by the backend.

``LocalRecordingStore`` owns its transactions: every public method opens
one ``get_session()`` scope so each write is committed before the call
returns. That makes a successful ``save()`` the durability anchor for the
upload pipeline. All database failures surface as ``PersistenceError``.
"""

import logging
import shutil
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import defer

from sessionvault.core.config import Settings, get_settings
from sessionvault.core.exceptions import PersistenceError
from sessionvault.core.models import AudioBlob, LocalRecordingEntry
from sessionvault.core.utils import generate_local_id, now_ms
from sessionvault.services.storage.database import get_session
from sessionvault.services.storage.models_db import LocalRecording

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def _to_entry(row: LocalRecording, with_blob: bool) -> LocalRecordingEntry:
    """Convert an ORM row into the service-level dataclass."""
    return LocalRecordingEntry(
        id=row.id,
        file_name=row.file_name,
        duration_seconds=row.duration_seconds,
        mime_type=row.mime_type,
        created_at=row.created_at,
        expires_at=row.expires_at,
        session_id=row.session_id,
        uploaded=row.uploaded,
        upload_error=row.upload_error,
        remote_recording_id=row.remote_recording_id,
        size_bytes=row.size_bytes,
        blob=AudioBlob(data=row.blob, mime_type=row.mime_type) if with_blob else None,
    )


class LocalRecordingStore:
    """Data-access layer for the ``local_recordings`` table.

    Args:
        session_factory: Session factory to use; the module default when None.
        settings: Application settings (TTL, quota headroom).
        clock: Returns the current epoch time in ms.
        free_space: Returns free bytes on the data volume.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], int] = now_ms,
        free_space: Callable[[], int] | None = None,
    ) -> None:
        self._factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._free_space = free_space or self._disk_free

    def _disk_free(self) -> int:
        path = Path(self._settings.data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return shutil.disk_usage(path).free

    @property
    def ttl_ms(self) -> int:
        return self._settings.local_recording_ttl_hours * 3600 * 1000

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(
        self,
        blob: AudioBlob,
        file_name: str,
        duration_seconds: float,
        session_id: str | None = None,
    ) -> str:
        """Persist a recording and return its local id.

        Raises:
            PersistenceError: Not enough free space, or the write failed.
        """
        required = self._settings.min_free_space_mb * _MB
        free = self._free_space()
        if free - blob.size < required:
            raise PersistenceError(
                f"Недостаточно места для сохранения записи "
                f"(свободно {free // _MB} MB, требуется {self._settings.min_free_space_mb} MB)"
            )

        try:
            await self.cleanup_expired()
        except PersistenceError:
            logger.warning("Expired-entry cleanup failed before save (non-fatal)")

        created = self._clock()
        local_id = generate_local_id(created)
        row = LocalRecording(
            id=local_id,
            blob=blob.data,
            file_name=file_name,
            duration_seconds=duration_seconds,
            mime_type=blob.mime_type,
            size_bytes=blob.size,
            created_at=created,
            expires_at=created + self.ttl_ms,
            session_id=session_id,
            uploaded=False,
        )
        try:
            async with get_session(self._factory) as session:
                session.add(row)
        except SQLAlchemyError as exc:
            logger.error("Failed to save local recording %s: %s", file_name, exc)
            raise PersistenceError(f"Failed to save recording locally: {exc}") from exc

        logger.info(
            "Saved local recording %s (%s, %d bytes, %.1fs)",
            local_id,
            file_name,
            blob.size,
            duration_seconds,
        )
        return local_id

    async def attach_remote(
        self, local_id: str, remote_recording_id: str, session_id: str | None = None
    ) -> bool:
        """Record the backend id as soon as the remote row exists.

        Lets a later retry reuse the row instead of creating a second one.
        Returns False if the entry is gone.
        """
        values: dict = {"remote_recording_id": remote_recording_id}
        if session_id:
            values["session_id"] = session_id
        return await self._update(local_id, values)

    async def mark_uploaded(
        self, local_id: str, remote_recording_id: str, session_id: str | None = None
    ) -> bool:
        """Flag the entry as confirmed by the backend."""
        if not remote_recording_id:
            raise PersistenceError("An uploaded recording needs its remote recording id")
        values: dict = {
            "uploaded": True,
            "upload_error": None,
            "remote_recording_id": remote_recording_id,
            "uploaded_at": datetime.now(UTC),
        }
        if session_id:
            values["session_id"] = session_id
        return await self._update(local_id, values)

    async def mark_upload_failed(self, local_id: str, error_message: str) -> bool:
        """Keep the entry unuploaded and remember why the last attempt failed."""
        return await self._update(local_id, {"uploaded": False, "upload_error": error_message})

    async def _update(self, local_id: str, values: dict) -> bool:
        try:
            async with get_session(self._factory) as session:
                result = await session.execute(
                    update(LocalRecording).where(LocalRecording.id == local_id).values(**values)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update local recording {local_id}: {exc}") from exc
        if result.rowcount == 0:
            logger.warning("Local recording %s not found for update", local_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, local_id: str) -> LocalRecordingEntry | None:
        """Return the entry with its blob, or None if missing or expired."""
        try:
            async with get_session(self._factory) as session:
                row = await session.get(LocalRecording, local_id)
                if row is None:
                    return None
                if row.expires_at <= self._clock():
                    await session.delete(row)
                    logger.info("Local recording %s expired; removed", local_id)
                    return None
                return _to_entry(row, with_blob=True)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read local recording {local_id}: {exc}") from exc

    async def list_unuploaded(self) -> list[LocalRecordingEntry]:
        """Metadata of every non-expired entry not yet confirmed, oldest first."""
        stmt = (
            select(LocalRecording)
            .options(defer(LocalRecording.blob))
            .where(
                LocalRecording.uploaded.is_(False),
                LocalRecording.expires_at > self._clock(),
            )
            .order_by(LocalRecording.created_at)
        )
        try:
            async with get_session(self._factory) as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_to_entry(r, with_blob=False) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list local recordings: {exc}") from exc

    async def usage(self) -> tuple[int, int]:
        """Return ``(entry_count, total_bytes)`` currently held."""
        stmt = select(func.count(LocalRecording.id), func.coalesce(func.sum(LocalRecording.size_bytes), 0))
        try:
            async with get_session(self._factory) as session:
                count, total = (await session.execute(stmt)).one()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read storage usage: {exc}") from exc
        return int(count), int(total)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def delete(self, local_id: str) -> bool:
        return await self._delete_where(LocalRecording.id == local_id) > 0

    async def delete_by_remote_id(self, remote_recording_id: str) -> int:
        """Drop local copies of a recording whose transcript is finished."""
        return await self._delete_where(LocalRecording.remote_recording_id == remote_recording_id)

    async def cleanup_expired(self) -> int:
        removed = await self._delete_where(LocalRecording.expires_at <= self._clock())
        if removed:
            logger.info("Removed %d expired local recording(s)", removed)
        return removed

    async def clear_all(self) -> int:
        """Remove everything (sign-out)."""
        return await self._delete_where(None)

    async def _delete_where(self, condition) -> int:
        stmt = delete(LocalRecording)
        if condition is not None:
            stmt = stmt.where(condition)
        try:
            async with get_session(self._factory) as session:
                result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete local recordings: {exc}") from exc
        return result.rowcount or 0
