"""
PHI audit trail for on-device recordings.

Every save, read, delete and upload outcome of a local recording is
reported to the backend's audit log. Entries are written off the caller's
path through the scheduler; a failed write is logged and never surfaces
to the clinician.
"""

import logging

from sessionvault.core.exceptions import SessionVaultError
from sessionvault.core.models import LocalAuditAction, UserContext
from sessionvault.core.scheduler import Scheduler
from sessionvault.services.backend.base import BaseRecordingBackend

logger = logging.getLogger(__name__)


class LocalRecordingAudit:
    """Best-effort writer for local-recording audit entries."""

    def __init__(self, backend: BaseRecordingBackend, scheduler: Scheduler) -> None:
        self._backend = backend
        self._scheduler = scheduler

    def record(
        self,
        user: UserContext | None,
        action: LocalAuditAction,
        recording_id: str | None,
        **details,
    ) -> None:
        """Queue one audit entry. Nothing is written without a signed-in user."""
        if user is None:
            return
        details = {k: v for k, v in details.items() if v is not None}

        async def _write() -> None:
            try:
                await self._backend.audit_local_operation(
                    user, action, recording_id, details or None
                )
            except SessionVaultError as exc:
                logger.warning("Audit entry %s for %s not written: %s", action, recording_id, exc.detail)

        self._scheduler.call_later(0, _write)
