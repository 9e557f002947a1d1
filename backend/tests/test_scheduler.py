"""Tests for the periodic scheduler."""

import asyncio

import pytest

from app.errors import ValidationError
from app.services.error_handler import ErrorHandler
from app.services.scheduler import PeriodicScheduler


class TestRunNow:
    async def test_records_result(self):
        scheduler = PeriodicScheduler()

        async def task():
            return 42

        scheduler.add("answer", 60, task)

        assert await scheduler.run_now("answer") == 42
        status = scheduler.get_status()["answer"]
        assert status["runs"] == 1
        assert status["last_run"] is not None
        assert scheduler.tasks["answer"].last_result == 42

    async def test_unknown_task(self):
        with pytest.raises(ValidationError):
            await PeriodicScheduler().run_now("nope")

    def test_duplicate_names_rejected(self):
        scheduler = PeriodicScheduler()

        async def task():
            return None

        scheduler.add("a", 1, task)
        with pytest.raises(ValueError):
            scheduler.add("a", 1, task)

    async def test_failure_is_handled_and_scheduler_survives(self):
        handler = ErrorHandler()
        scheduler = PeriodicScheduler(handler)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise OSError("no such file or directory")
            return "ok"

        scheduler.add("flaky", 60, flaky)

        assert await scheduler.run_now("flaky") is None
        status = scheduler.get_status()["flaky"]
        assert status["failures"] == 1
        assert "no such file" in status["last_error"]
        assert handler.recent_errors[0]["type"] == "filesystem"

        assert await scheduler.run_now("flaky") == "ok"
        assert scheduler.get_status()["flaky"]["last_error"] is None

    async def test_overlapping_run_is_skipped(self):
        scheduler = PeriodicScheduler()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "done"

        scheduler.add("slow", 60, slow)
        first = asyncio.create_task(scheduler.run_now("slow"))
        await asyncio.sleep(0)

        assert await scheduler.run_now("slow") is None
        gate.set()
        assert await first == "done"
        assert scheduler.get_status()["slow"]["skipped"] == 1

    async def test_run_all(self):
        scheduler = PeriodicScheduler()

        async def one():
            return 1

        async def two():
            return 2

        scheduler.add("one", 60, one)
        scheduler.add("two", 60, two)

        assert await scheduler.run_all() == {"one": 1, "two": 2}


class TestLoop:
    async def test_runs_on_cadence(self):
        scheduler = PeriodicScheduler()
        runs = []

        async def tick():
            runs.append(1)

        scheduler.add("tick", 0.01, tick)
        await scheduler.start()
        await asyncio.sleep(0.15)
        await scheduler.stop()

        assert len(runs) >= 2
        assert scheduler.running is False

    async def test_slow_task_ticks_are_skipped(self):
        scheduler = PeriodicScheduler()
        active = 0
        peak = 0

        async def slow():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.1)
            active -= 1

        scheduler.add("slow", 0.01, slow)
        await scheduler.start()
        await asyncio.sleep(0.25)
        await scheduler.stop()

        assert peak == 1
        assert scheduler.get_status()["slow"]["skipped"] > 0
