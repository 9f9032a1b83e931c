"""
FastAPI application factory.

``create_app()`` assembles the local control API with CORS, error
handlers, routers, and the health endpoint. The module-level ``app``
instance allows ``uvicorn sessionvault.api.app:app``; ``serve()`` is the
console entry point.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionvault.api.dependencies import Services, build_services, close_services
from sessionvault.api.middleware.error_handler import register_error_handlers
from sessionvault.api.routes import recording
from sessionvault.core.config import configure_logging, get_settings
from sessionvault.core.models import HealthResponse


def create_app(services: Services | None = None) -> FastAPI:
    """Build and return a fully configured FastAPI application.

    Args:
        services: Pre-built services (tests). When None they are built
            on startup and released on shutdown.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            yield
            return
        configure_logging(settings.log_level)
        app.state.services = await build_services(settings)
        try:
            yield
        finally:
            await close_services(app.state.services)

    app = FastAPI(
        title="SessionVault",
        description="Background capture, local persistence and resilient upload "
        "of therapy-session recordings.",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Error handlers --
    register_error_handlers(app)

    # -- Health check (root-level, not under /api/v1) --
    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health() -> HealthResponse:
        return HealthResponse(timestamp=datetime.now(UTC))

    # -- REST routes --
    app.include_router(recording.router, prefix="/api/v1")

    return app


app = create_app()


def serve() -> None:
    """Run the control API on the configured host and port."""
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, log_level=settings.log_level.lower())
