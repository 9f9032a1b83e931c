"""Process lifecycle port and the recovery breadcrumb file.

``LifecycleObserver`` is implemented by the orchestrator and driven by
whatever hosts it: the control API's lifecycle endpoints, the app
shutdown hook, and the connectivity watcher.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from sessionvault.core.models import RecoveryBreadcrumb

logger = logging.getLogger(__name__)

BREADCRUMB_FILE = "recovery_breadcrumb.json"


class LifecycleObserver(ABC):
    """Hooks fired by the hosting shell."""

    @abstractmethod
    async def on_hidden(self) -> None:
        """The client went to the background; snapshot what we have."""

    @abstractmethod
    def on_suspend_requested(self) -> bool:
        """The process is about to exit.

        Must do its synchronous work before returning. Returns True when a
        recording is in progress and the user should be asked to confirm.
        """

    @abstractmethod
    async def on_online(self) -> None:
        """Network connectivity returned."""


class BreadcrumbStore:
    """Single JSON file holding the last in-progress recording's metadata.

    Writes are synchronous so they complete inside a suspend hook.
    """

    def __init__(self, directory: str | Path) -> None:
        self._path = Path(directory) / BREADCRUMB_FILE

    @property
    def path(self) -> Path:
        return self._path

    def write(self, breadcrumb: RecoveryBreadcrumb) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(breadcrumb.to_dict()), encoding="utf-8")
        os.replace(tmp, self._path)

    def read(self) -> RecoveryBreadcrumb | None:
        """Return the breadcrumb, or None if absent. A corrupt file is removed."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return RecoveryBreadcrumb.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Discarding unreadable recovery breadcrumb: %s", exc)
            self.clear()
            return None

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove recovery breadcrumb: %s", exc)
