"""
Vault Indexer - Middleware

Access logging for the read API with a per-request correlation id.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import LogContext

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_request_id: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return _request_id.get()


def _log_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in RequestLoggingMiddleware.QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One access line per request: method, path, status and duration.

    The request id comes from the X-Request-ID header (or is minted), is bound
    to every log line written while handling the request, and is echoed on
    the response. Probe paths log at DEBUG.
    """

    QUIET_PATHS = frozenset({"/live", "/ready", "/health"})

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        path = request.url.path
        token = _request_id.set(request_id)
        started = time.perf_counter()
        try:
            with LogContext(request_id=request_id):
                try:
                    response = await call_next(request)
                except Exception as e:
                    logger.error(
                        f"{request.method} {path} raised {type(e).__name__}: {e}",
                        extra={"method": request.method, "path": path},
                    )
                    raise

                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                logger.log(
                    _log_level(path, response.status_code),
                    f"{request.method} {path} -> {response.status_code} in {duration_ms}ms",
                    extra={
                        "method": request.method,
                        "path": path,
                        "status_code": response.status_code,
                        "duration_ms": duration_ms,
                    },
                )
        finally:
            _request_id.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
