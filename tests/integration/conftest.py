"""Integration test fixtures for SessionVault.

Builds the control API around real services (SQLite local store, upload
queue, transcription tracker, orchestrator) with a mocked backend, a fake
microphone and the manual scheduler.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from sessionvault.api.app import create_app
from sessionvault.api.dependencies import Services


@pytest.fixture
def app(orchestrator, upload_queue, backend):
    """FastAPI app with pre-built services injected (the lifespan is skipped)."""
    return create_app(
        services=Services(orchestrator=orchestrator, queue=upload_queue, backend=backend)
    )


@pytest.fixture
async def async_client(app, upload_queue):
    """AsyncClient bound to the app; waits for background uploads on teardown."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await upload_queue.join()


@pytest.fixture
async def mounted_client(async_client):
    """Client whose session is already mounted for ``user-1``."""
    resp = await async_client.post(
        "/api/v1/session/mount", json={"user_id": "user-1", "clinic_id": "clinic-1"}
    )
    assert resp.status_code == 200
    return async_client
