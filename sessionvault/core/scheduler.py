"""
Timer abstraction shared by the polling, checkpoint and cleanup loops.

Every delayed action in the pipeline goes through a ``Scheduler`` so that
handles can be cancelled deterministically (on terminal status, cancel or
unmount) and so tests can drive time by hand.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """Cancellable reference to one scheduled callback."""

    def __init__(self) -> None:
        self._cancelled = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Scheduler(ABC):
    """Interface for monotonic time, delayed callbacks and sleeping."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Run ``await callback()`` after *delay* seconds unless cancelled."""

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """Suspend the caller for *delay* seconds."""


class AsyncioScheduler(Scheduler):
    """Production scheduler on top of the running event loop.

    Fired callbacks run as tasks; exceptions are logged and never
    propagate into the loop.
    """

    def __init__(self) -> None:
        self._handles: set[TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle()

        def _fire() -> None:
            self._handles.discard(handle)
            if handle.cancelled:
                return
            handle._timer = None
            task = loop.create_task(self._run(callback))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle._timer = loop.call_later(max(delay, 0.0), _fire)
        self._handles.add(handle)
        return handle

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    @staticmethod
    async def _run(callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled callback failed")

    async def shutdown(self) -> None:
        """Cancel pending timers and wait for callbacks already running."""
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
