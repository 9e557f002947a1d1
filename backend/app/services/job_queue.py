"""Job queue manager with a pool of background workers."""
import asyncio
import logging
import os
import signal
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

JobExecutor = Callable[[str], Awaitable[None]]

# Seconds between SIGTERM and SIGKILL when cancelling
TERMINATE_GRACE = 0.5


class JobQueue:
    """Feeds queued job ids to ``worker_count`` workers.

    The executor owns everything about a job's outcome; the queue only
    tracks which jobs are running and which subprocess each one is
    currently waiting on, so a cancel can kill it.
    """

    def __init__(self, worker_count: int = 1, executor: Optional[JobExecutor] = None):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker_count = max(1, worker_count)
        self.executor = executor
        self.running = False
        self.worker_tasks: List[asyncio.Task] = []
        self.active_job_ids: Set[str] = set()
        self.current_processes: Dict[str, asyncio.subprocess.Process] = {}
        self.cancelled_job_ids: Set[str] = set()
        self.removed_job_ids: Set[str] = set()

    def set_executor(self, executor: JobExecutor):
        self.executor = executor

    async def add_job(self, job_id: str):
        """
        Add job to queue.

        Args:
            job_id: Database job ID
        """
        self.removed_job_ids.discard(job_id)
        self.cancelled_job_ids.discard(job_id)
        await self.queue.put(job_id)
        logger.info(f"Job {job_id} added to queue. Queue size: {self.queue.qsize()}")

    async def register_process(self, job_id: str, process: asyncio.subprocess.Process):
        """Remember the subprocess a job is waiting on."""
        self.current_processes[job_id] = process
        # Cancelled between segments: kill the new process straight away
        if job_id in self.cancelled_job_ids:
            await self._terminate(job_id, process)

    def is_cancelled(self, job_id: str) -> bool:
        return job_id in self.cancelled_job_ids

    async def cancel_job(self, job_id: str) -> bool:
        """
        Stop a job whether it is queued or running.

        Returns:
            True if a running subprocess was signalled
        """
        if job_id not in self.active_job_ids:
            # Still queued (or unknown): make the worker skip it
            self.removed_job_ids.add(job_id)
            return False

        logger.info(f"Cancelling job {job_id}")
        self.cancelled_job_ids.add(job_id)
        process = self.current_processes.get(job_id)
        if process is None or process.returncode is not None:
            return False
        return await self._terminate(job_id, process)

    async def _terminate(self, job_id: str, process: asyncio.subprocess.Process) -> bool:
        try:
            # Kill the entire process group
            os.killpg(os.getpgid(process.pid), signal.SIGTERM)

            # Give it a moment to terminate gracefully
            await asyncio.sleep(TERMINATE_GRACE)

            # If still running, force kill the group
            if process.returncode is None:
                try:
                    os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                except ProcessLookupError:
                    pass  # Process already gone
            return True
        except ProcessLookupError:
            logger.warning(f"Process for job {job_id} already terminated")
            return True
        except OSError as e:
            logger.error(f"Error cancelling job {job_id}: {e}")
            return False

    async def start_worker(self):
        """Start background worker tasks."""
        if self.running:
            logger.warning("Workers already running")
            return
        if self.executor is None:
            raise RuntimeError("JobQueue has no executor")

        self.running = True
        self.worker_tasks = [
            asyncio.create_task(self._worker_loop(n)) for n in range(self.worker_count)
        ]
        logger.info(f"Job queue started with {self.worker_count} workers")

    async def stop_worker(self):
        """Stop background worker tasks."""
        if not self.running:
            return

        self.running = False
        for task in self.worker_tasks:
            task.cancel()
        await asyncio.gather(*self.worker_tasks, return_exceptions=True)
        self.worker_tasks = []
        logger.info("Job queue workers stopped")

    async def join(self):
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def _worker_loop(self, worker_number: int):
        """Background worker that processes jobs one at a time."""
        logger.info(f"Worker {worker_number} started")

        while self.running:
            try:
                # Get next job from queue (with timeout to allow checking running flag)
                try:
                    job_id = await asyncio.wait_for(self.queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    # Skip jobs that were removed while queued
                    if job_id in self.removed_job_ids:
                        self.removed_job_ids.discard(job_id)
                        logger.info(f"Skipping removed job {job_id}")
                        continue

                    self.active_job_ids.add(job_id)
                    logger.info(f"Worker {worker_number} processing job {job_id}")
                    await self.executor(job_id)
                except Exception as e:
                    logger.error(f"Error processing job {job_id}: {e}", exc_info=True)
                finally:
                    self.active_job_ids.discard(job_id)
                    self.current_processes.pop(job_id, None)
                    self.cancelled_job_ids.discard(job_id)
                    self.queue.task_done()

            except asyncio.CancelledError:
                logger.info(f"Worker {worker_number} cancelled")
                break

    def get_queue_status(self) -> dict:
        """Get current queue status."""
        return {
            "queue_size": self.queue.qsize(),
            "active_job_ids": sorted(self.active_job_ids),
            "workers": len(self.worker_tasks),
            "running": self.running,
        }
