from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .errors import CameraError, RedemptionError


class RequestTimingLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request and adds an 'X-Process-Time-Ms' header."""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Process-Time-Ms"] = str(duration_ms)

        self.logger.info(
            "method=%s path=%s status=%s duration_ms=%s ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.client.host if request.client else "?",
        )
        return response


def _error_body(request: Request, status: int, message: str, **extra) -> dict:
    error = {"status": status, "message": message, "path": request.url.path}
    error.update(extra)
    return {"ok": False, "error": error}


def add_exception_handlers(app: FastAPI) -> None:
    """Register consistent error payload shapes for HTTP, domain and generic exceptions."""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else ""
        return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.status_code, message))

    @app.exception_handler(CameraError)
    async def camera_error_handler(request: Request, exc: CameraError):
        logging.getLogger("error").warning("camera error on %s: %s (%s)", request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=409, content=_error_body(request, 409, exc.user_message, code=exc.code))

    @app.exception_handler(RedemptionError)
    async def redemption_error_handler(request: Request, exc: RedemptionError):
        return JSONResponse(status_code=400, content=_error_body(request, 400, str(exc)))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # Do not leak internals
        logging.getLogger("error").exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content=_error_body(request, 500, "Internal server error"))
