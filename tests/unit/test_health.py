"""Tests for the health check and CORS headers.

Exercises the FastAPI app through an async HTTP client without running
the lifespan, so no device or backend is touched.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from sessionvault.api.app import create_app


@pytest.fixture
def app():
    """App without injected services; only /health is usable."""
    return create_app()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def test_health_returns_200(client):
    """Liveness probe reports the package version."""
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["version"] == "0.1.0"
    assert "timestamp" in body


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


async def test_cors_allows_configured_origin(client):
    """The UI shell's default origin (localhost:3000) is in the CORS allow-list."""
    resp = await client.options(
        "/health",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert resp.headers.get("access-control-allow-origin") == "http://localhost:3000"


async def test_cors_rejects_unknown_origin(client):
    """A foreign origin gets no allow header back."""
    resp = await client.options(
        "/health",
        headers={
            "Origin": "http://untrusted.example.com",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert "access-control-allow-origin" not in resp.headers

