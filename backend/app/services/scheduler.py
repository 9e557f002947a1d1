"""Runs maintenance tasks on fixed cadences inside the event loop."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.errors import ErrorContext, ValidationError
from app.services.error_handler import ErrorHandler

logger = logging.getLogger(__name__)

TaskFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    name: str
    interval: float
    func: TaskFunc
    running: bool = False
    last_run: Optional[float] = None
    last_result: Any = None
    last_error: Optional[str] = None
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class PeriodicScheduler:
    """One loop per task; a tick that finds the previous run still active is skipped."""

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self._inflight: List[asyncio.Task] = []

    def add(self, name: str, interval: float, func: TaskFunc):
        """
        Register a task.

        Args:
            name: Unique task name
            interval: Seconds between runs
            func: Async callable without arguments
        """
        if name in self.tasks:
            raise ValueError(f"Task already registered: {name}")
        self.tasks[name] = ScheduledTask(name=name, interval=interval, func=func)

    def _get(self, name: str) -> ScheduledTask:
        task = self.tasks.get(name)
        if task is None:
            raise ValidationError(
                f"Unknown maintenance task: {name}",
                http_status=404,
                context=ErrorContext(operation="run_task").with_extra(task=name),
            )
        return task

    async def start(self):
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.running = True
        for task in self.tasks.values():
            task.task = asyncio.create_task(self._loop(task))
        logger.info(f"Scheduler started with {len(self.tasks)} tasks")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        pending = [t.task for t in self.tasks.values() if t.task] + self._inflight
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in self.tasks.values():
            task.task = None
        self._inflight = []
        logger.info("Scheduler stopped")

    async def _loop(self, task: ScheduledTask):
        while self.running:
            try:
                await asyncio.sleep(task.interval)
                if task.running:
                    task.skipped += 1
                    logger.warning(f"Skipping {task.name}: previous run still active")
                    continue
                # Run detached so a slow run does not delay the next tick
                run = asyncio.create_task(self._execute(task))
                self._inflight.append(run)
                run.add_done_callback(self._forget)
            except asyncio.CancelledError:
                break

    def _forget(self, run: asyncio.Task):
        if run in self._inflight:
            self._inflight.remove(run)

    async def _execute(self, task: ScheduledTask) -> Any:
        task.running = True
        started = time.monotonic()
        try:
            result = await task.func()
        except Exception as e:
            task.failures += 1
            task.last_error = str(e)
            logger.error(f"Maintenance task {task.name} failed: {e}", exc_info=True)
            if self.error_handler:
                await self.error_handler.handle(e)
            return None
        finally:
            task.running = False
            task.last_run = time.time()
            task.runs += 1

        task.last_result = result
        task.last_error = None
        logger.info(f"Maintenance task {task.name} finished in {time.monotonic() - started:.2f}s")
        return result

    async def run_now(self, name: str) -> Any:
        """Run one task immediately; returns None if it was already running."""
        task = self._get(name)
        if task.running:
            task.skipped += 1
            logger.warning(f"Skipping {task.name}: already running")
            return None
        return await self._execute(task)

    async def run_all(self) -> Dict[str, Any]:
        return {name: await self.run_now(name) for name in self.tasks}

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            task.name: {
                "interval": task.interval,
                "running": task.running,
                "last_run": task.last_run,
                "last_error": task.last_error,
                "runs": task.runs,
                "skipped": task.skipped,
                "failures": task.failures,
            }
            for task in self.tasks.values()
        }
