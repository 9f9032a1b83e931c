"""Tests for the asyncio-backed scheduler used in production."""

import asyncio

from sessionvault.core.scheduler import AsyncioScheduler


class TestAsyncioScheduler:
    async def test_callback_fires(self):
        scheduler = AsyncioScheduler()
        fired = asyncio.Event()

        async def _cb():
            fired.set()

        scheduler.call_later(0.01, _cb)
        await asyncio.wait_for(fired.wait(), timeout=1)
        await scheduler.shutdown()

    async def test_cancelled_callback_does_not_fire(self):
        scheduler = AsyncioScheduler()
        calls = []

        async def _cb():
            calls.append(1)

        handle = scheduler.call_later(0.01, _cb)
        handle.cancel()
        await asyncio.sleep(0.05)

        assert calls == []
        assert handle.cancelled

    async def test_callback_exception_is_logged_not_raised(self, caplog):
        scheduler = AsyncioScheduler()

        async def _boom():
            raise RuntimeError("boom")

        scheduler.call_later(0, _boom)
        await asyncio.sleep(0.02)
        await scheduler.shutdown()

        assert "Scheduled callback failed" in caplog.text

    async def test_shutdown_cancels_pending(self):
        scheduler = AsyncioScheduler()
        calls = []

        async def _cb():
            calls.append(1)

        handle = scheduler.call_later(0.05, _cb)
        await scheduler.shutdown()
        await asyncio.sleep(0.1)

        assert calls == []
        assert handle.cancelled

    async def test_now_is_monotonic(self):
        scheduler = AsyncioScheduler()
        first = scheduler.now()
        await scheduler.sleep(0.01)
        assert scheduler.now() > first
