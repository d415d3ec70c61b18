"""
Vault Indexer - Runner

Single cooperative loop over the poll coordinator:

- a cycle that reports more pages runs again immediately
- a cycle that applied events waits BUSY_DELAY_SECONDS
- an idle or failed cycle waits IDLE_DELAY_SECONDS

SIGINT/SIGTERM set a shutdown event. Each cycle is raced against that event;
an in-flight cycle gets SHUTDOWN_GRACE_SECONDS to finish and is then
cancelled. Delays are waits on the same event, so shutdown never sits out a
sleep.

Usage:
    python -m vault_indexer.indexer.runner
    vault-indexer run
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

import uvicorn

from ..config import SERVICE_NAME, Settings, configure_logging, get_settings, log_startup_diagnostics
from ..core.logging import LogContext, Timer, new_run_id
from ..db import close_db_pool, init_db_pool
from ..routers.health import create_health_app
from .coordinator import CycleResult, PollCoordinator
from .cursor_store import CursorStore
from .source import SuiEventSource
from .store import MaterializationStore

logger = logging.getLogger(__name__)


@dataclass
class RunnerStats:
    cycles: int = 0
    applied: int = 0
    replayed: int = 0
    failed_cycles: int = 0
    last_success_at: datetime | None = None


class IndexerRunner:
    """Drives PollCoordinator.poll_all() until shutdown is requested."""

    def __init__(
        self,
        coordinator: PollCoordinator,
        *,
        busy_delay: float = 1.0,
        idle_delay: float = 5.0,
        replay_batch: int = 100,
        replay_max_attempts: int | None = 5,
        shutdown_grace: float = 5.0,
    ):
        self.coordinator = coordinator
        self.busy_delay = busy_delay
        self.idle_delay = idle_delay
        self.replay_batch = replay_batch
        self.replay_max_attempts = replay_max_attempts
        self.shutdown_grace = shutdown_grace
        self._shutdown = asyncio.Event()
        self._stats = RunnerStats()

    @classmethod
    def from_settings(cls, coordinator: PollCoordinator, settings: Settings) -> "IndexerRunner":
        return cls(
            coordinator,
            busy_delay=settings.BUSY_DELAY_SECONDS,
            idle_delay=settings.IDLE_DELAY_SECONDS,
            replay_batch=settings.DEAD_LETTER_REPLAY_BATCH,
            replay_max_attempts=settings.DEAD_LETTER_MAX_ATTEMPTS,
            shutdown_grace=settings.SHUTDOWN_GRACE_SECONDS,
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        """Route SIGTERM/SIGINT to request_shutdown on the running loop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                logger.debug(f"Signal handlers unsupported on this platform ({sig.name})")

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def next_delay(self, result: CycleResult | None) -> float:
        """Seconds to wait before the next cycle; ``None`` means the cycle failed."""
        if result is None:
            return self.idle_delay
        if result.has_more:
            return 0.0
        if result.applied > 0:
            return self.busy_delay
        return self.idle_delay

    async def run_cycle(self) -> CycleResult:
        """
        Poll every event type once; when the backlog is drained, retry dead letters.

        Raises whatever poll_all() surfaces (SourceError, CursorPersistError).
        """
        result = await self.coordinator.poll_all()
        if not result.has_more and self.replay_batch > 0:
            try:
                result.replayed = await self.coordinator.replay_dead_letters(
                    limit=self.replay_batch, max_attempts=self.replay_max_attempts
                )
            except Exception:
                logger.exception("Dead-letter replay failed; will retry after the next drained cycle")
            result.applied += result.replayed
        return result

    async def _guarded_cycle(self) -> CycleResult | None:
        with LogContext(run_id=new_run_id()), Timer() as timer:
            try:
                result = await self.run_cycle()
            except Exception as e:
                self._stats.failed_cycles += 1
                logger.error(
                    f"Poll cycle failed: {type(e).__name__}: {e}",
                    extra={"error_type": type(e).__name__},
                    exc_info=True,
                )
                return None

            self._stats.cycles += 1
            self._stats.applied += result.applied
            self._stats.replayed += result.replayed
            self._stats.last_success_at = datetime.now(timezone.utc)
            logger.info(
                f"Cycle complete: applied={result.applied}, has_more={result.has_more}",
                extra={
                    "applied": result.applied,
                    "has_more": result.has_more,
                    "duration_ms": timer.elapsed_ms,
                },
            )
            return result

    async def _race_cycle(self) -> CycleResult | None:
        cycle_task = asyncio.create_task(self._guarded_cycle())
        stop_task = asyncio.create_task(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {cycle_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if cycle_task not in done:
                logger.info(
                    f"Shutdown during cycle; allowing {self.shutdown_grace}s to finish"
                )
                done, _ = await asyncio.wait({cycle_task}, timeout=self.shutdown_grace)
                if cycle_task not in done:
                    cycle_task.cancel()
                    await asyncio.gather(cycle_task, return_exceptions=True)
                    logger.warning("In-flight cycle cancelled after grace period")
                    return None
            return cycle_task.result()
        finally:
            for task in (cycle_task, stop_task):
                if not task.done():
                    task.cancel()

    async def _sleep(self, delay: float) -> None:
        """Wait ``delay`` seconds or until shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, max_cycles: int | None = None) -> RunnerStats:
        """Loop until shutdown (or ``max_cycles`` cycles, for tests and one-shot runs)."""
        logger.info(
            f"Indexer loop starting: busy_delay={self.busy_delay}s idle_delay={self.idle_delay}s"
        )
        attempts = 0
        while not self._shutdown.is_set():
            if max_cycles is not None and attempts >= max_cycles:
                break
            attempts += 1
            result = await self._race_cycle()
            if self._shutdown.is_set():
                break
            delay = self.next_delay(result)
            if delay > 0:
                logger.debug(f"Sleeping {delay}s", extra={"delay_s": delay})
                await self._sleep(delay)

        logger.info(
            f"Indexer loop stopped: cycles={self._stats.cycles} "
            f"applied={self._stats.applied} failed={self._stats.failed_cycles}"
        )
        return self._stats

    def stats(self) -> dict[str, Any]:
        data = asdict(self._stats)
        if self._stats.last_success_at is not None:
            data["last_success_at"] = self._stats.last_success_at.isoformat()
        return data


# =============================================================================
# Process wiring
# =============================================================================


class _ProbeServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the indexer loop."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def build_coordinator(pool: Any, source: SuiEventSource, settings: Settings) -> PollCoordinator:
    return PollCoordinator(
        source,
        CursorStore(pool),
        MaterializationStore(pool),
        settings.VAULT_PACKAGE_ID,
        settings.VAULT_MODULE_NAME,
        page_size=settings.POLL_PAGE_SIZE,
    )


def build_source(settings: Settings) -> SuiEventSource:
    return SuiEventSource(
        settings.SUI_RPC_URL,
        timeout=settings.RPC_TIMEOUT_SECONDS,
        max_attempts=settings.RPC_MAX_ATTEMPTS,
        page_size=settings.POLL_PAGE_SIZE,
    )


async def run_indexer(settings: Settings | None = None, max_cycles: int | None = None) -> RunnerStats:
    """Open the pool and the ledger client, serve probes, and run the loop until shutdown."""
    settings = settings or get_settings()
    pool = await init_db_pool(settings)
    source = build_source(settings)
    server: _ProbeServer | None = None
    server_task: asyncio.Task[Any] | None = None
    try:
        runner = IndexerRunner.from_settings(build_coordinator(pool, source, settings), settings)
        runner.install_signal_handlers()

        if settings.HEALTH_PORT:
            server = _ProbeServer(
                uvicorn.Config(
                    create_health_app(),
                    host=settings.HEALTH_HOST,
                    port=settings.HEALTH_PORT,
                    log_config=None,
                    access_log=False,
                )
            )
            server_task = asyncio.create_task(server.serve())
            logger.info(f"Probe server on {settings.HEALTH_HOST}:{settings.HEALTH_PORT}")

        return await runner.run(max_cycles=max_cycles)
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        await source.close()
        await close_db_pool()


def main() -> None:
    settings = get_settings()
    configure_logging(settings, service_name=SERVICE_NAME)
    log_startup_diagnostics("vault-indexer (runner)", settings)
    asyncio.run(run_indexer(settings))


if __name__ == "__main__":
    main()
