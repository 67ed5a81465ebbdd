"""
Global middleware and exception handlers.

Error responses are always ``{"ok": false, "error": <code>, "message": …}``
built from the error's public message; upstream bodies never reach clients.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from utils.errors import (
    AuthError,
    ConfigError,
    DemoWriteBlockedError,
    RateLimitedError,
    SyncError,
    TransientError,
    UnknownPlatformError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = [
    (ConfigError, 500),
    (DemoWriteBlockedError, 403),
    (UnknownPlatformError, 400),
    (RateLimitedError, 429),
    (AuthError, 502),
    (TransientError, 503),
]


def _status_for(exc: SyncError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and error handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc)
        else:
            logger.warning("%s on %s: %s", exc.code, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": exc.code, "message": exc.public_message},
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": "http_error", "message": str(exc.detail)}
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, **detail},
            headers=getattr(exc, "headers", None),
        )
