"""
Global exception handlers for the NAV hub backend.

Catches exceptions and returns user-friendly error responses
while logging appropriately (unavailability as warning, others as error).
"""
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from navhub.core.logging_config import get_main_logger
from navhub.core.circuit_breaker import CircuitOpenError
from navhub.services.nav_service.core import (
    FatalSyncError,
    NavSyncError,
    SyncAlreadyRunningError,
    TransientFetchError,
)

logger = get_main_logger()


async def circuit_breaker_exception_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
    """
    Handle circuit breaker open errors.
    Returns 503 Service Unavailable with retry information.
    """
    logger.warning(f"Circuit breaker open: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=503,
        content={
            "detail": "NAV source temporarily unavailable due to rate limiting. Please try again shortly.",
            "error_type": "circuit_breaker_open",
            "retry_after": 30
        }
    )


async def fatal_sync_exception_handler(request: Request, exc: FatalSyncError) -> JSONResponse:
    """Store or registry unreachable: 503."""
    logger.error(f"Fatal sync error: {request.method} {request.url.path} - {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "detail": "NAV store is unavailable. Please try again later.",
            "error_type": "service_unavailable"
        }
    )


async def source_fetch_exception_handler(request: Request, exc: TransientFetchError) -> JSONResponse:
    """
    Handle failures of the external NAV source (timeouts, bad responses, 429).
    Returns 502 Bad Gateway.
    """
    logger.warning(f"NAV source error: {request.method} {request.url.path} - {exc}")
    return JSONResponse(
        status_code=502,
        content={
            "detail": "The NAV source did not respond usefully. Please try again later.",
            "error_type": "source_unavailable"
        }
    )


async def nav_sync_exception_handler(request: Request, exc: NavSyncError) -> JSONResponse:
    """Any other pipeline error, e.g. a rolled back write: 503."""
    logger.error(f"NAV pipeline error: {request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "detail": "NAV data could not be processed. Please try again later.",
            "error_type": "service_unavailable"
        }
    )


async def sync_running_exception_handler(request: Request, exc: SyncAlreadyRunningError) -> JSONResponse:
    logger.info(f"Sync already running: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "error_type": "sync_in_progress"}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other unhandled exceptions.
    Logs as error and returns 500 response.
    """
    logger.error(f"Unhandled exception: {request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_type": "internal_error"
        }
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions (404, 422 raised by routes, etc.)."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(CircuitOpenError, circuit_breaker_exception_handler)
    app.add_exception_handler(FatalSyncError, fatal_sync_exception_handler)
    app.add_exception_handler(SyncAlreadyRunningError, sync_running_exception_handler)
    app.add_exception_handler(TransientFetchError, source_fetch_exception_handler)
    app.add_exception_handler(NavSyncError, nav_sync_exception_handler)

    # Handle all other exceptions
    app.add_exception_handler(Exception, generic_exception_handler)
