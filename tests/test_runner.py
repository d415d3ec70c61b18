"""
Tests for the indexer runner: delay policy, dead-letter replay hook,
failure handling and cooperative shutdown.
"""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from vault_indexer.core.errors import SourceError
from vault_indexer.indexer.coordinator import CycleResult
from vault_indexer.indexer.runner import IndexerRunner


def make_runner(**kwargs) -> tuple[IndexerRunner, MagicMock]:
    coordinator = MagicMock()
    coordinator.poll_all = AsyncMock(return_value=CycleResult())
    coordinator.replay_dead_letters = AsyncMock(return_value=0)
    options = {"busy_delay": 1.0, "idle_delay": 5.0, "shutdown_grace": 1.0}
    options.update(kwargs)
    return IndexerRunner(coordinator, **options), coordinator


class TestNextDelay:
    def test_has_more_runs_immediately(self):
        runner, _ = make_runner()
        assert runner.next_delay(CycleResult(applied=3, has_more=True)) == 0.0

    def test_applied_uses_busy_delay(self):
        runner, _ = make_runner()
        assert runner.next_delay(CycleResult(applied=1)) == 1.0

    def test_idle_uses_idle_delay(self):
        runner, _ = make_runner()
        assert runner.next_delay(CycleResult()) == 5.0

    def test_failed_cycle_uses_idle_delay(self):
        runner, _ = make_runner()
        assert runner.next_delay(None) == 5.0


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_drained_cycle_replays_dead_letters(self):
        runner, coordinator = make_runner(replay_batch=25, replay_max_attempts=3)
        coordinator.poll_all.return_value = CycleResult(applied=2)
        coordinator.replay_dead_letters.return_value = 1

        result = await runner.run_cycle()

        coordinator.replay_dead_letters.assert_awaited_once_with(limit=25, max_attempts=3)
        assert result.replayed == 1
        assert result.applied == 3

    @pytest.mark.asyncio
    async def test_backlog_skips_replay(self):
        runner, coordinator = make_runner()
        coordinator.poll_all.return_value = CycleResult(applied=50, has_more=True)

        await runner.run_cycle()

        coordinator.replay_dead_letters.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replay_disabled_with_zero_batch(self):
        runner, coordinator = make_runner(replay_batch=0)

        await runner.run_cycle()

        coordinator.replay_dead_letters.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replay_failure_does_not_fail_cycle(self, caplog):
        runner, coordinator = make_runner()
        coordinator.poll_all.return_value = CycleResult(applied=1)
        coordinator.replay_dead_letters.side_effect = ConnectionError("db gone")

        with caplog.at_level("ERROR", logger="vault_indexer.indexer.runner"):
            result = await runner.run_cycle()

        assert result.applied == 1
        assert "Dead-letter replay failed" in caplog.text


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_delays_follow_cycle_outcomes(self):
        runner, coordinator = make_runner()
        coordinator.poll_all.side_effect = [
            CycleResult(applied=50, has_more=True),
            CycleResult(applied=2),
            CycleResult(),
        ]

        with patch.object(runner, "_sleep", new_callable=AsyncMock) as mock_sleep:
            stats = await runner.run(max_cycles=3)

        assert mock_sleep.await_args_list == [call(1.0), call(5.0)]
        assert stats.cycles == 3
        assert stats.applied == 52
        assert stats.last_success_at is not None

    @pytest.mark.asyncio
    async def test_failed_cycle_backs_off_and_continues(self):
        runner, coordinator = make_runner()
        coordinator.poll_all.side_effect = [SourceError("node down"), CycleResult(applied=1)]

        with patch.object(runner, "_sleep", new_callable=AsyncMock) as mock_sleep:
            stats = await runner.run(max_cycles=2)

        assert mock_sleep.await_args_list == [call(5.0), call(1.0)]
        assert stats.failed_cycles == 1
        assert stats.cycles == 1

    @pytest.mark.asyncio
    async def test_failed_cycle_logged_with_type(self, caplog):
        runner, coordinator = make_runner()
        coordinator.poll_all.side_effect = SourceError("node down")

        with patch.object(runner, "_sleep", new_callable=AsyncMock), caplog.at_level(
            "ERROR", logger="vault_indexer.indexer.runner"
        ):
            await runner.run(max_cycles=1)

        assert "SourceError" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_before_start_runs_nothing(self):
        runner, coordinator = make_runner()
        runner.request_shutdown()

        await runner.run()

        coordinator.poll_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_idle_sleep(self):
        runner, coordinator = make_runner(idle_delay=30.0)

        async def stop_soon():
            await asyncio.sleep(0.05)
            runner.request_shutdown()

        stopper = asyncio.create_task(stop_soon())
        stats = await asyncio.wait_for(runner.run(), timeout=5)
        await stopper

        assert stats.cycles == 1
        assert runner.stopping

    @pytest.mark.asyncio
    async def test_in_flight_cycle_finishes_within_grace(self):
        runner, coordinator = make_runner(shutdown_grace=2.0)

        async def slow_cycle():
            runner.request_shutdown()
            await asyncio.sleep(0.05)
            return CycleResult(applied=4)

        coordinator.poll_all.side_effect = slow_cycle

        stats = await asyncio.wait_for(runner.run(), timeout=5)

        assert stats.cycles == 1
        assert stats.applied == 4

    @pytest.mark.asyncio
    async def test_in_flight_cycle_cancelled_after_grace(self):
        runner, coordinator = make_runner(shutdown_grace=0.05)
        never = asyncio.Event()
        cancelled = asyncio.Event()

        async def stuck_cycle():
            runner.request_shutdown()
            try:
                await never.wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        coordinator.poll_all.side_effect = stuck_cycle

        stats = await asyncio.wait_for(runner.run(), timeout=5)

        assert cancelled.is_set()
        assert stats.cycles == 0


class TestSignals:
    @pytest.mark.asyncio
    async def test_installs_term_and_int_handlers(self):
        runner, _ = make_runner()
        loop = MagicMock()

        with patch("vault_indexer.indexer.runner.asyncio.get_running_loop", return_value=loop):
            runner.install_signal_handlers()

        installed = {c.args[0] for c in loop.add_signal_handler.call_args_list}
        assert installed == {signal.SIGTERM, signal.SIGINT}
        handler = loop.add_signal_handler.call_args_list[0].args[1]
        handler()
        assert runner.stopping

    @pytest.mark.asyncio
    async def test_unsupported_platform_is_tolerated(self):
        runner, _ = make_runner()
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        with patch("vault_indexer.indexer.runner.asyncio.get_running_loop", return_value=loop):
            runner.install_signal_handlers()


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_serializable(self):
        runner, coordinator = make_runner()
        coordinator.poll_all.return_value = CycleResult(applied=2)

        with patch.object(runner, "_sleep", new_callable=AsyncMock):
            await runner.run(max_cycles=1)

        stats = runner.stats()
        assert stats["cycles"] == 1
        assert stats["applied"] == 2
        assert isinstance(stats["last_success_at"], str)
