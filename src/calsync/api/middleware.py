"""API error handling: domain exceptions become ``{"error": {...}}`` responses.

Status code mapping:
- ``AuthenticationError`` (remote rejected our credentials) → 401
- ``TransientNetworkError`` → 502 Bad Gateway
- ``SyncTimeoutError`` → 504 Gateway Timeout
- ``CalendarNotSyncableError`` / ``ConflictError`` → 409 Conflict
- ``KeyError`` (unknown notification) → 404 Not Found
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import (
    AuthenticationError,
    CalendarNotSyncableError,
    ConflictError,
    SyncError,
    SyncTimeoutError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

_SYNC_STATUS: list[tuple[type[SyncError], int, str]] = [
    (AuthenticationError, 401, "REMOTE_AUTH_FAILED"),
    (TransientNetworkError, 502, "REMOTE_UNAVAILABLE"),
    (SyncTimeoutError, 504, "SYNC_TIMEOUT"),
    (CalendarNotSyncableError, 409, "CALENDAR_NOT_SYNCABLE"),
    (ConflictError, 409, "REMOTE_CONFLICT"),
]


def _error_response(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )


async def _handle_sync_error(request: Request, exc: SyncError) -> JSONResponse:
    """Map each sync failure class onto its HTTP status; unknown ones are 500."""
    for error_type, status_code, code in _SYNC_STATUS:
        if isinstance(exc, error_type):
            logger.warning("%s on %s: %s", code, request.url.path, exc)
            return _error_response(
                status_code,
                ErrorDetail(code=code, message=str(exc), calendar_id=exc.calendar_id),
            )
    logger.error("Sync failed on %s: %s", request.url.path, exc, exc_info=exc)
    return _error_response(
        500, ErrorDetail(code="SYNC_FAILED", message=str(exc), calendar_id=exc.calendar_id)
    )


async def _handle_key_error(request: Request, exc: KeyError) -> JSONResponse:
    """Return 404 when a looked-up record does not exist."""
    message = exc.args[0] if exc.args else "Not found"
    logger.info("Not found: %s", message)
    return _error_response(404, ErrorDetail(code="NOT_FOUND", message=str(message)))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, ErrorDetail(code="VALIDATION_ERROR", message=str(exc)))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any exception no handler claimed into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(
                500, ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(SyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(KeyError, _handle_key_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
