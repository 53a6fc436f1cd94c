"""Tests for PeriodicTask."""

from __future__ import annotations

import asyncio

import pytest

from canopy.tasks import PeriodicTask


class TestPeriodicTask:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: asyncio.sleep(0))

    async def test_run_once_counts(self):
        calls = []

        async def job():
            calls.append(1)

        task = PeriodicTask("job", 60, job)
        assert await task.run_once()
        assert task.runs == 1
        assert task.failures == 0
        assert calls == [1]

    async def test_failure_is_contained(self):
        async def job():
            raise RuntimeError("boom")

        task = PeriodicTask("job", 60, job)
        assert await task.run_once()
        assert task.failures == 1
        assert task.runs == 0
        assert not task.in_flight

    async def test_overlapping_run_is_skipped(self):
        gate = asyncio.Event()

        async def job():
            await gate.wait()

        task = PeriodicTask("job", 60, job)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)
        assert task.in_flight
        assert not await task.run_once()
        gate.set()
        assert await first
        assert task.runs == 1

    async def test_loop_runs_until_stopped(self):
        ran = asyncio.Event()

        async def job():
            ran.set()

        task = PeriodicTask("job", 0.01, job)
        task.start()
        assert task.started
        await asyncio.wait_for(ran.wait(), timeout=2)
        await task.stop()
        assert not task.started
        assert task.runs >= 1

    async def test_stop_without_start(self):
        task = PeriodicTask("job", 1, lambda: asyncio.sleep(0))
        await task.stop()
        assert not task.started
