"""
Vault Indexer - Error Handling

Two halves:

- The indexer exception hierarchy. Every failure the synchronization engine
  can hit is an IndexerError subclass so the coordinator and runner can tell
  per-event failures (decode/apply) from per-cycle ones (source/cursor).
- Structured error responses for the HTTP surfaces.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

if TYPE_CHECKING:
    from ..indexer.models import WithdrawalStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Indexer Exceptions
# =============================================================================


class IndexerError(Exception):
    """Base exception for the event synchronization engine."""


class DecodeError(IndexerError):
    """A required payload field is missing or malformed. Scoped to one event."""

    def __init__(self, event_name: str, field: str, reason: str):
        self.event_name = event_name
        self.field = field
        self.reason = reason
        super().__init__(f"{event_name}: field '{field}' {reason}")


class ApplyError(IndexerError):
    """The store or lifecycle rejected a decoded record. Scoped to one event."""


class UnknownRequestError(ApplyError):
    """A lifecycle event referenced a withdrawal request that is not stored."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"withdrawal request {request_id} not found")


class IllegalTransitionError(ApplyError):
    """A lifecycle event asked for a status change the lifecycle graph forbids."""

    def __init__(self, request_id: str, current: "WithdrawalStatus", target: "WithdrawalStatus"):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"withdrawal request {request_id}: illegal transition "
            f"{current.value} -> {target.value}"
        )


class SourceError(IndexerError):
    """The ledger event source failed for a whole page."""


class CursorPersistError(IndexerError):
    """Advancing the durable cursor failed after a page was applied."""

    def __init__(self, event_type: str, cause: BaseException):
        self.event_type = event_type
        super().__init__(f"failed to persist cursor for {event_type}: {cause}")


# =============================================================================
# HTTP error responses
# =============================================================================
#
# Query failures inside read endpoints never get here; they answer with the
# success-false envelope from vault_indexer.api.response. These handlers cover
# unknown paths and invalid query parameters, plus a 500 for anything uncaught.


class ErrorDetail(BaseModel):
    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    status_code: int
    request_id: str | None = None
    details: list[ErrorDetail] | None = None


ERROR_CODES = {
    400: "bad_request",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
    503: "service_unavailable",
}


def error_response(
    status_code: int, message: str, details: list[ErrorDetail] | None = None
) -> JSONResponse:
    body = ErrorResponse(
        error=ERROR_CODES.get(status_code, "internal_error"),
        message=message,
        status_code=status_code,
        request_id=get_request_id() or None,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
    return error_response(exc.status_code, str(exc.detail))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Invalid page/limit/status parameters: 422 with one detail per field."""
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in err.get("loc", ())) or None,
            message=err.get("msg", "Invalid value"),
            code=err.get("type"),
        )
        for err in exc.errors()
    ]
    logger.warning(
        f"Rejected {request.url.path}: {len(details)} invalid parameter(s)",
        extra={"path": request.url.path, "count": len(details)},
    )
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Request validation failed", details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 without internals; the traceback goes to the log only."""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        extra={"path": request.url.path, "method": request.method, "error_type": type(exc).__name__},
        exc_info=exc,
    )
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred")


def setup_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
