"""
Vault Indexer - Database Layer

One async psycopg pool per process, shared by the indexer and the read API.
Opening the pool retries with exponential backoff; the outcome is kept in
PoolHealthState so readiness probes can report why the database is
unavailable without opening a connection themselves.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from psycopg_pool import AsyncConnectionPool

from . import __version__
from .config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 6
MAX_TOTAL_WAIT_SECONDS = 60.0
BASE_DELAY_SECONDS = 1.0
READINESS_CHECK_TIMEOUT = 2.0


@dataclass
class PoolHealthState:
    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    last_check_at: float | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None

    def mark_healthy(self) -> None:
        self.healthy = True
        self.last_error = None
        self.last_check_at = time.monotonic()

    def mark_failed(self, error: str) -> None:
        self.healthy = False
        self.last_error = error[:200]


_pool_health = PoolHealthState()
_db_pool: Optional[AsyncConnectionPool] = None


def get_pool_health() -> PoolHealthState:
    return _pool_health


def describe_dsn(dsn: str) -> str:
    """``user@host:port/dbname`` for logs; the password is never included."""
    parsed = urlparse(dsn)
    dbname = parsed.path.lstrip("/") or "?"
    return f"{parsed.username or '?'}@{parsed.hostname or '?'}:{parsed.port or 5432}/{dbname}"


def application_name(service: str = "vault_indexer") -> str:
    """Postgres application_name, e.g. ``vault_indexer_v0_1_0``."""
    return f"{service}_v{__version__.replace('.', '_').replace('-', '_')}"


async def ping(pool: AsyncConnectionPool) -> bool:
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute("SELECT 1")
            row = await cur.fetchone()
    return bool(row and row[0] == 1)


async def _open_pool(settings: Settings) -> AsyncConnectionPool:
    pool = AsyncConnectionPool(
        settings.DATABASE_URL,
        min_size=settings.DB_POOL_MIN_SIZE,
        max_size=settings.DB_POOL_MAX_SIZE,
        timeout=settings.DB_CONNECT_TIMEOUT_SECONDS,
        kwargs={"application_name": application_name()},
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=settings.DB_CONNECT_TIMEOUT_SECONDS)
        if not await ping(pool):
            raise RuntimeError("SELECT 1 returned an unexpected result")
    except BaseException:
        await pool.close()
        raise
    return pool


def _backoff_delay(attempt: int, elapsed: float) -> float:
    """Exponential delay with up to 30% jitter, capped by the remaining time budget."""
    delay = BASE_DELAY_SECONDS * (2 ** (attempt - 1))
    delay += random.uniform(0, delay * 0.3)
    return max(0.0, min(delay, MAX_TOTAL_WAIT_SECONDS - elapsed))


async def init_db_pool(
    settings: Settings | None = None,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> AsyncConnectionPool:
    """
    Open the shared pool (or return it if already open).

    Raises:
        RuntimeError: when every attempt fails or the time budget runs out
    """
    global _db_pool
    if _db_pool is not None:
        return _db_pool

    settings = settings or get_settings()
    logger.info(f"Connecting to database {describe_dsn(settings.DATABASE_URL)}")
    started = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        _pool_health.init_attempts = attempt
        elapsed = time.monotonic() - started
        if elapsed >= MAX_TOTAL_WAIT_SECONDS:
            logger.error(f"DB pool init: time budget exhausted after {elapsed:.1f}s")
            break

        try:
            _db_pool = await _open_pool(settings)
        except Exception as e:
            last_error = e
            _pool_health.mark_failed(f"{type(e).__name__}: {e}")
            logger.warning(
                f"DB pool init attempt {attempt}/{max_attempts} failed: {type(e).__name__}: {e}"
            )
            if attempt < max_attempts:
                delay = _backoff_delay(attempt, elapsed)
                if delay > 0:
                    logger.info(f"DB pool init: retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
            continue

        _pool_health.initialized = True
        _pool_health.init_duration_ms = (time.monotonic() - started) * 1000
        _pool_health.mark_healthy()
        logger.info(
            f"Database pool ready (attempt {attempt}, {_pool_health.init_duration_ms:.0f}ms)"
        )
        return _db_pool

    _pool_health.initialized = False
    _pool_health.healthy = False
    raise RuntimeError(
        f"Failed to initialize database pool after {_pool_health.init_attempts} attempts: "
        f"{last_error}"
    )


async def close_db_pool() -> None:
    global _db_pool
    if _db_pool is None:
        return
    logger.info("Closing database pool")
    pool, _db_pool = _db_pool, None
    _pool_health.initialized = False
    _pool_health.healthy = False
    await pool.close()


async def get_pool() -> AsyncConnectionPool:
    """The shared pool, opened on first use."""
    if _db_pool is None:
        return await init_db_pool()
    return _db_pool


async def check_db_ready(
    pool: AsyncConnectionPool | None = None,
    timeout: float = READINESS_CHECK_TIMEOUT,
) -> tuple[bool, str]:
    """
    Run SELECT 1 with a timeout.

    Returns:
        ``(ready, status)`` where status is e.g. ``"ok (3ms)"`` or ``"timeout (2.0s)"``
    """
    pool = pool or _db_pool
    if pool is None:
        return False, _pool_health.last_error or "Pool not initialized"

    started = time.monotonic()
    try:
        ok = await asyncio.wait_for(ping(pool), timeout=timeout)
    except asyncio.TimeoutError:
        _pool_health.mark_failed(f"Query timeout ({timeout}s)")
        return False, f"timeout ({timeout}s)"
    except Exception as e:
        _pool_health.mark_failed(f"{type(e).__name__}: {e}")
        return False, f"error: {type(e).__name__}"

    if not ok:
        _pool_health.mark_failed("SELECT 1 returned an unexpected result")
        return False, "unexpected_result"

    _pool_health.mark_healthy()
    return True, f"ok ({(time.monotonic() - started) * 1000:.0f}ms)"
