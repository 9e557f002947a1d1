"""Application context: every long-lived service, wired once at startup."""

import functools
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request

from app.config import Settings
from app.database import Database
from app.errors import AuthorizationError, ErrorContext, ErrorType, create_error
from app.services.clip_splitter import ClipSplitter
from app.services.credit_ledger import CreditLedger
from app.services.error_handler import ErrorHandler
from app.services.file_service import FileService
from app.services.job_queue import JobQueue
from app.services.job_service import JobService, MetadataReader
from app.services.reclaimer import ResourceReclaimer
from app.services.scheduler import PeriodicScheduler
from app.services.transcoder import FFmpegTranscoder, Transcoder
from app.utils.ffprobe import get_video_info

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    database: Database
    error_handler: ErrorHandler
    files: FileService
    ledger: CreditLedger
    transcoder: Transcoder
    splitter: ClipSplitter
    queue: JobQueue
    jobs: JobService
    reclaimer: ResourceReclaimer
    scheduler: PeriodicScheduler

    async def start(self, run_workers: bool = True):
        """Create storage and, for the serving process, recover and start workers.

        ``run_workers=False`` is for one-off tools running beside a live
        server; they must not touch jobs the server is processing.
        """
        self.settings.ensure_directories()
        await self.database.init()

        if run_workers:
            recovered = await self.jobs.recover_interrupted_jobs()
            if recovered:
                logger.warning(f"Recovered {recovered} jobs interrupted by a restart")
            await self.queue.start_worker()
            if self.settings.SCHEDULER_ENABLED:
                await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
        await self.queue.stop_worker()
        await self.database.dispose()


def build_context(
    settings: Settings,
    transcoder: Optional[Transcoder] = None,
    metadata_reader: Optional[MetadataReader] = None,
) -> AppContext:
    """
    Wire every service from ``settings``.

    Args:
        settings: Configuration to build from
        transcoder: Engine used to cut clips, ffmpeg by default
        metadata_reader: Async probe of a source file, ffprobe by default

    Returns:
        A context whose background work has not been started
    """
    database = Database(settings.DATABASE_URL)
    error_handler = ErrorHandler(database)
    files = FileService(settings)
    ledger = CreditLedger(database, default_credits=settings.DEFAULT_CREDITS)
    transcoder = transcoder or FFmpegTranscoder(settings.FFMPEG_BINARY)
    splitter = ClipSplitter(database, transcoder, settings)
    queue = JobQueue(worker_count=settings.MAX_CONCURRENT_JOBS)
    metadata_reader = metadata_reader or functools.partial(
        get_video_info, ffprobe_binary=settings.FFPROBE_BINARY
    )
    jobs = JobService(
        database,
        settings,
        ledger,
        splitter,
        queue,
        error_handler,
        files,
        metadata_reader,
    )
    queue.set_executor(jobs.execute)

    reclaimer = ResourceReclaimer(database, settings, files, error_handler)
    scheduler = PeriodicScheduler(error_handler)
    reclaimer.register(scheduler)

    return AppContext(
        settings=settings,
        database=database,
        error_handler=error_handler,
        files=files,
        ledger=ledger,
        transcoder=transcoder,
        splitter=splitter,
        queue=queue,
        jobs=jobs,
        reclaimer=reclaimer,
        scheduler=scheduler,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context built in the lifespan."""
    return request.app.state.context


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Acting user, taken from the ``X-User-Id`` header."""
    if not x_user_id:
        raise create_error(
            ErrorType.AUTHENTICATION,
            "Missing X-User-Id header",
            http_status=401,
        )
    return x_user_id


def get_admin_user(
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
) -> str:
    """Acting user, who must be listed in ``ADMIN_USER_IDS``."""
    if user_id not in ctx.settings.ADMIN_USER_IDS:
        raise AuthorizationError(
            f"User {user_id} may not run maintenance tasks",
            context=ErrorContext(user_id=user_id, operation="maintenance"),
        )
    return user_id
