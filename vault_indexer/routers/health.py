"""
Vault Indexer - Health Check Router

Operational probes shared by the indexer process and the read API. None of
them look at polling state, so a stalled loop never takes the probes down.

Key endpoints:
- GET /live   - Liveness probe: 200 while the process can answer
- GET /ready  - Readiness probe: 200 only if SELECT 1 succeeds within 2s
- GET /health - Storage reachable plus process uptime
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..db import check_db_ready, get_pool_health

READINESS_DB_TIMEOUT = 2.0
HEALTH_DB_TIMEOUT = 5.0

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


class LivenessResponse(BaseModel):
    alive: bool
    timestamp: str


class ReadinessResponse(BaseModel):
    """Readiness probe body; ``checks`` names each dependency and its state."""

    ready: bool
    timestamp: str
    checks: dict[str, str]
    error: str | None = None


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: str
    uptime_seconds: int
    version: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _uptime_seconds(request: Request) -> int:
    started_at = getattr(request.app.state, "started_at", None)
    if started_at is None:
        return 0
    return int(time.monotonic() - started_at)


@router.get("/live", response_model=LivenessResponse, summary="Liveness probe")
async def liveness_check() -> LivenessResponse:
    """Never touches the database; if this fails, restart the process."""
    return LivenessResponse(alive=True, timestamp=_now())


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"description": "Database unreachable or pool not initialized"}},
    summary="Readiness probe",
)
async def readiness_check() -> JSONResponse:
    is_ready, db_status = await check_db_ready(timeout=READINESS_DB_TIMEOUT)
    body = ReadinessResponse(
        ready=is_ready,
        timestamp=_now(),
        checks={"database": "ready" if is_ready else "not_ready"},
        error=None if is_ready else get_pool_health().last_error or db_status,
    )
    if not is_ready:
        logger.warning(f"Readiness check failed: db={db_status}")
        return JSONResponse(status_code=503, content=body.model_dump())
    return JSONResponse(status_code=200, content=body.model_dump())


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable"}},
    summary="Health check",
)
async def health_check(request: Request) -> JSONResponse:
    """
    Storage reachability plus uptime.

    Returns 503 with ``{"error", "message"}`` when the database cannot be
    reached, so load balancers can act on the status code alone.
    """
    is_ready, db_status = await check_db_ready(timeout=HEALTH_DB_TIMEOUT)
    if not is_ready:
        logger.warning(f"Health check failed: db={db_status}")
        return JSONResponse(
            status_code=503,
            content={
                "error": "Service unhealthy",
                "message": f"Database connection failed: {db_status}",
            },
        )
    body = HealthResponse(
        status="healthy",
        database="connected",
        timestamp=_now(),
        uptime_seconds=_uptime_seconds(request),
        version=__version__,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


def create_health_app() -> FastAPI:
    """Probe-only app embedded in the indexer process."""
    app = FastAPI(
        title="Vault Indexer Probes",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.started_at = time.monotonic()
    app.include_router(router)
    return app
