"""Tests for the worker pool and process-group cancellation."""

import asyncio
import shutil

import pytest

from app.services.job_queue import JobQueue


class TestWorkers:
    async def test_runs_every_queued_job(self):
        seen = []

        async def executor(job_id):
            seen.append(job_id)

        queue = JobQueue(worker_count=2, executor=executor)
        await queue.start_worker()
        try:
            for job_id in ("a", "b", "c"):
                await queue.add_job(job_id)
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await queue.stop_worker()

        assert sorted(seen) == ["a", "b", "c"]
        assert queue.get_queue_status()["running"] is False

    async def test_jobs_run_concurrently_up_to_worker_count(self):
        running = 0
        peak = 0

        async def executor(job_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1

        queue = JobQueue(worker_count=2, executor=executor)
        await queue.start_worker()
        try:
            for n in range(4):
                await queue.add_job(str(n))
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await queue.stop_worker()

        assert peak == 2

    async def test_executor_error_does_not_stop_worker(self):
        seen = []

        async def executor(job_id):
            seen.append(job_id)
            if job_id == "bad":
                raise RuntimeError("boom")

        queue = JobQueue(executor=executor)
        await queue.start_worker()
        try:
            await queue.add_job("bad")
            await queue.add_job("good")
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await queue.stop_worker()

        assert seen == ["bad", "good"]
        assert queue.active_job_ids == set()

    async def test_removed_job_is_skipped(self):
        seen = []

        async def executor(job_id):
            seen.append(job_id)

        queue = JobQueue(executor=executor)
        await queue.add_job("skip-me")
        assert await queue.cancel_job("skip-me") is False
        await queue.add_job("run-me")

        await queue.start_worker()
        try:
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await queue.stop_worker()

        assert seen == ["run-me"]

    async def test_start_requires_executor(self):
        with pytest.raises(RuntimeError):
            await JobQueue().start_worker()


@pytest.mark.skipif(shutil.which("sleep") is None, reason="needs a sleep binary")
class TestCancelRunningJob:
    async def test_kills_process_group(self):
        registered = asyncio.Event()
        finished = {}

        queue = JobQueue()

        async def executor(job_id):
            process = await asyncio.create_subprocess_exec("sleep", "30", start_new_session=True)
            await queue.register_process(job_id, process)
            registered.set()
            finished["returncode"] = await process.wait()

        queue.set_executor(executor)
        await queue.start_worker()
        try:
            await queue.add_job("job-1")
            await asyncio.wait_for(registered.wait(), timeout=5)

            assert queue.get_queue_status()["active_job_ids"] == ["job-1"]
            assert await queue.cancel_job("job-1") is True
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await queue.stop_worker()

        assert finished["returncode"] < 0
        assert queue.current_processes == {}
        assert queue.cancelled_job_ids == set()
