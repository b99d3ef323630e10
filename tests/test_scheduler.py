"""Tests for the debounced scan scheduler."""

import asyncio

import pytest

from profilenotes.engine.scheduler import ScanScheduler, ScanState

DELAY = 0.02


class TestScanScheduler:
    @pytest.mark.asyncio
    async def test_burst_runs_once(self):
        calls = []
        scheduler = ScanScheduler(lambda: calls.append(1), delay=DELAY)
        for _ in range(10):
            scheduler.trigger()
        assert scheduler.state is ScanState.SCHEDULED
        await asyncio.sleep(DELAY * 4)
        assert calls == [1]
        assert scheduler.state is ScanState.IDLE

    @pytest.mark.asyncio
    async def test_trigger_while_running_reruns_once(self):
        gate = asyncio.Event()
        calls = 0

        async def action():
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()

        scheduler = ScanScheduler(action, delay=DELAY)
        scheduler.trigger()
        await asyncio.sleep(DELAY * 2)
        assert scheduler.state is ScanState.RUNNING

        scheduler.trigger()
        scheduler.trigger()
        gate.set()
        await asyncio.sleep(DELAY * 4)
        await scheduler.wait_idle()
        assert calls == 2
        assert scheduler.runs == 2

    @pytest.mark.asyncio
    async def test_cancel(self):
        calls = []
        scheduler = ScanScheduler(lambda: calls.append(1), delay=DELAY)
        scheduler.trigger()
        scheduler.cancel()
        await asyncio.sleep(DELAY * 3)
        assert calls == []
        assert scheduler.state is ScanState.IDLE

    @pytest.mark.asyncio
    async def test_run_now_skips_timer(self):
        calls = []
        scheduler = ScanScheduler(lambda: calls.append(1), delay=DELAY)
        scheduler.trigger()
        await scheduler.run_now()
        await asyncio.sleep(DELAY * 3)
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failing_action_returns_to_idle(self):
        def boom():
            raise RuntimeError("scan failed")

        scheduler = ScanScheduler(boom, delay=DELAY)
        await scheduler.run_now()
        assert scheduler.state is ScanState.IDLE
        assert scheduler.runs == 1

    @pytest.mark.asyncio
    async def test_run_now_drops_run_queued_by_timer(self):
        calls = []
        scheduler = ScanScheduler(lambda: calls.append(1), delay=DELAY)
        scheduler._fire()
        await scheduler.run_now()
        await asyncio.sleep(DELAY * 3)
        assert calls == [1]
        assert scheduler.runs == 1
        assert scheduler.state is ScanState.IDLE

