"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``SyncValidationError`` / ``ValueError`` → 400 Bad Request
- ``SyncPermissionError`` → 403 Forbidden
- ``NotFoundError`` / ``KeyError`` → 404 Not Found
- ``DuplicateConfigurationError`` / ``StaleConfigurationError`` → 409 Conflict
- ``TransientRemoteError`` → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import (
    DuplicateConfigurationError,
    NotFoundError,
    StaleConfigurationError,
    SyncPermissionError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int, code: str, message: str, details: dict | None = None
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error on %s: %s", request.url.path, exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_permission_error(request: Request, exc: SyncPermissionError) -> JSONResponse:
    logger.info("Permission denied on %s: %s", request.url.path, exc)
    return _error_response(403, "FORBIDDEN", str(exc))


async def _handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info("Not found: %s", exc)
    return _error_response(
        404,
        "NOT_FOUND",
        str(exc),
        details={"kind": exc.kind, "id": str(exc.identifier)},
    )


async def _handle_key_error(request: Request, exc: KeyError) -> JSONResponse:
    key = exc.args[0] if exc.args else None
    logger.info("Lookup failed: %s", key)
    return _error_response(404, "NOT_FOUND", f"Not found: {key}")


async def _handle_duplicate(request: Request, exc: DuplicateConfigurationError) -> JSONResponse:
    return _error_response(
        409, "DUPLICATE_CONFIGURATION", str(exc), details={"calendar_id": exc.calendar_id}
    )


async def _handle_stale(request: Request, exc: StaleConfigurationError) -> JSONResponse:
    return _error_response(409, "CONCURRENT_MODIFICATION", str(exc))


async def _handle_transient(request: Request, exc: TransientRemoteError) -> JSONResponse:
    """Return 502 when the remote calendar provider cannot be reached or fails."""
    logger.warning("Remote calendar failure on %s: %s", request.url.path, exc)
    details = {"status_code": exc.status_code} if exc.status_code is not None else None
    return _error_response(502, "REMOTE_UNAVAILABLE", str(exc), details=details)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    covered by ``add_exception_handler`` still produce the standard error
    envelope rather than a plain-text 500.
    """

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
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are looked up by the exception's MRO, so the domain classes
    take precedence over ``ValueError`` and ``LookupError`` bases.
    """
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(SyncPermissionError, _handle_permission_error)  # type: ignore[arg-type]
    app.add_exception_handler(NotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(KeyError, _handle_key_error)  # type: ignore[arg-type]
    app.add_exception_handler(DuplicateConfigurationError, _handle_duplicate)  # type: ignore[arg-type]
    app.add_exception_handler(StaleConfigurationError, _handle_stale)  # type: ignore[arg-type]
    app.add_exception_handler(TransientRemoteError, _handle_transient)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
