"""
Exception handlers for the control API.

Every failure the UI shell sees uses the same JSON envelope::

    {"detail": ..., "code": ..., "timestamp": ..., "path": ...}

Domain errors keep their own code and status; storage failures also say
whether the upload may succeed on retry.
"""

import logging
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sessionvault.core.exceptions import SessionVaultError, StorageError

logger = logging.getLogger(__name__)


def _envelope(
    request: Request,
    status_code: int,
    detail: str,
    code: str,
    timestamp: str | None = None,
    **extra,
) -> JSONResponse:
    content = {
        "detail": detail,
        "code": code,
        "timestamp": timestamp or datetime.now(UTC).isoformat(),
        "path": request.url.path,
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def register_error_handlers(app: FastAPI) -> None:
    """Attach the domain, validation and catch-all handlers to *app*."""

    @app.exception_handler(SessionVaultError)
    async def sessionvault_error_handler(request: Request, exc: SessionVaultError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc.detail)
        else:
            logger.info("%s %s rejected: [%s] %s", request.method, request.url.path, exc.code, exc.detail)
        extra = {"retryable": exc.retryable} if isinstance(exc, StorageError) else {}
        return _envelope(request, exc.status_code, exc.detail, exc.code, exc.timestamp, **extra)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _envelope(request, 422, str(exc), "VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        # The traceback goes to the log only
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _envelope(request, 500, "Internal server error", "INTERNAL_ERROR")
