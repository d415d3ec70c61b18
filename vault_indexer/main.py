"""
Vault Indexer - Read API

FastAPI application over the materialized tables. Creates the app, wires up
routers, and opens the database pool on startup.

Run with: uvicorn vault_indexer.main:app --reload
      or: vault-indexer serve-api

CORS is the outermost middleware, so preflight requests never reach the
request logger.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import configure_logging, get_settings, log_startup_diagnostics
from .core.errors import setup_error_handlers
from .core.middleware import RequestLoggingMiddleware
from .db import close_db_pool, init_db_pool
from .routers.health import router as health_router
from .routers.vaults import router as vaults_router
from .routers.withdrawal_requests import router as withdrawal_requests_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: open the database pool.
    Shutdown: close it.

    A pool that cannot be opened does not stop the app; /ready and /health
    report 503 until the database is reachable.
    """
    settings = get_settings()
    app.state.started_at = time.monotonic()
    logger.info(f"Starting vault indexer read API v{__version__}")

    try:
        await init_db_pool(settings)
        logger.info("Database pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database pool: {e}")

    yield

    logger.info("Shutting down read API")
    await close_db_pool()


def create_app() -> FastAPI:
    """
    Application factory.

    Returns:
        FastAPI app with CORS, request logging, error handlers and routers
    """
    settings = get_settings()

    app = FastAPI(
        title="Vault Indexer API",
        description="Read-only views of vaults, deposits, withdrawal requests and withdrawals.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.started_at = time.monotonic()

    # Middleware added last runs first
    app.add_middleware(RequestLoggingMiddleware)

    origins = settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    setup_error_handlers(app)

    app.include_router(health_router)
    app.include_router(vaults_router)
    app.include_router(withdrawal_requests_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    configure_logging(settings, service_name="vault-indexer-api")
    log_startup_diagnostics("vault-indexer (api)", settings)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
