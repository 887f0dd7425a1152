"""
Tests for the SweepScheduler.
"""
import pytest
import asyncio
import os
import sys
from unittest.mock import MagicMock, AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from replication_engine import SweepResult
from scheduler import SweepScheduler, SweepInProgress


def _sweep() -> SweepResult:
    return SweepResult(checked_at="2026-01-01T00:00:00+00:00", traders_checked=1, results=[])


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.check_and_replicate_trades = AsyncMock(return_value=_sweep())
    engine.get_stats = MagicMock(return_value={"syncs_completed": 0, "trades_executed": 0, "in_flight": []})
    return engine


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_runs_sweep_and_records_status(self, mock_engine):
        scheduler = SweepScheduler(mock_engine, interval_sec=60)

        result = await scheduler.run_once(trigger="api")

        assert result.traders_checked == 1
        status = scheduler.get_status()
        assert status["runs"] == 1
        assert status["errors"] == 0
        assert status["last_trigger"] == "api"
        assert status["last_result"]["traders_checked"] == 1
        assert status["sweeping"] is False

    @pytest.mark.asyncio
    async def test_overlapping_sweep_refused(self, mock_engine):
        release = asyncio.Event()

        async def slow_sweep():
            await release.wait()
            return _sweep()

        mock_engine.check_and_replicate_trades = slow_sweep
        scheduler = SweepScheduler(mock_engine)

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0)

        assert scheduler.is_sweeping
        with pytest.raises(SweepInProgress):
            await scheduler.run_once()

        release.set()
        await first
        assert scheduler.runs == 1

    @pytest.mark.asyncio
    async def test_error_counted_and_raised(self, mock_engine):
        mock_engine.check_and_replicate_trades = AsyncMock(side_effect=RuntimeError("db locked"))
        scheduler = SweepScheduler(mock_engine)

        with pytest.raises(RuntimeError):
            await scheduler.run_once()

        status = scheduler.get_status()
        assert status["errors"] == 1
        assert status["last_error"] == "db locked"
        assert not scheduler.is_sweeping


class TestLoop:

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, mock_engine):
        calls = []

        async def flaky_sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return _sweep()

        mock_engine.check_and_replicate_trades = flaky_sweep
        scheduler = SweepScheduler(mock_engine, interval_sec=0.01)

        scheduler.start_background()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.runs >= 2
        assert scheduler.errors == 1
        assert scheduler.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_start_background_is_idempotent(self, mock_engine):
        scheduler = SweepScheduler(mock_engine, interval_sec=10)

        task = scheduler.start_background()
        assert scheduler.start_background() is task

        await scheduler.stop()
        assert task.done()

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_sweep(self, mock_engine):
        started = asyncio.Event()

        async def slow_sweep():
            started.set()
            await asyncio.sleep(10)
            return _sweep()

        mock_engine.check_and_replicate_trades = slow_sweep
        scheduler = SweepScheduler(mock_engine, interval_sec=10)

        task = scheduler.start_background()
        await started.wait()
        await scheduler.stop()

        assert task.done()
        assert not scheduler.is_sweeping
