"""Job lifecycle: upload registration, processing, cancellation and cleanup."""

import asyncio
import json
import logging
import weakref
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.database import Database, utcnow
from app.errors import (
    AppError,
    AuthorizationError,
    ErrorContext,
    InvalidTransitionError,
    JobBusyError,
    JobCancelledError,
    NotFoundError,
    ValidationError,
)
from app.models.activity import ActivityLog
from app.models.clip import Clip
from app.models.job import Job, JobStatus, can_transition, sources_for
from app.services.clip_splitter import ClipSplitter, plan_segments
from app.services.credit_ledger import CreditLedger, calculate_credit_cost
from app.services.error_handler import ErrorHandler
from app.services.file_service import FileService
from app.services.job_queue import JobQueue
from app.utils.ffprobe import VideoMetadata

logger = logging.getLogger(__name__)

MetadataReader = Callable[[str], Awaitable[VideoMetadata]]

# Progress reported once the worker picks a job up; segments fill 10..90
INTAKE_PROGRESS = 10
SEGMENT_PROGRESS_SPAN = 80


@dataclass
class ProcessOptions:
    """Processing options sent with a process request."""

    duration: Optional[int] = None
    custom_duration: Optional[int] = None
    generate_subtitles: bool = False
    clips_count: Optional[int] = None


def segment_progress(done: int, planned: int) -> int:
    if planned <= 0:
        return INTAKE_PROGRESS
    return INTAKE_PROGRESS + round(SEGMENT_PROGRESS_SPAN * done / planned)


class JobService:
    """Owns every write to a job row."""

    def __init__(
        self,
        database: Database,
        settings: Settings,
        ledger: CreditLedger,
        splitter: ClipSplitter,
        queue: JobQueue,
        error_handler: ErrorHandler,
        files: FileService,
        metadata_reader: MetadataReader,
    ):
        self.database = database
        self.settings = settings
        self.ledger = ledger
        self.splitter = splitter
        self.queue = queue
        self.error_handler = error_handler
        self.files = files
        self.metadata_reader = metadata_reader
        # Entries disappear once no request holds or waits on the lock
        self._job_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_id] = lock
        return lock

    # Queries

    async def _load_owned(self, db: AsyncSession, job_id: str, user_id: str) -> Job:
        job = await db.get(Job, job_id)
        if job is None:
            raise NotFoundError(
                f"Job not found: {job_id}",
                context=ErrorContext(job_id=job_id, user_id=user_id),
                user_message="Job not found.",
            )
        if job.user_id != user_id:
            raise AuthorizationError(
                f"Access denied to job {job_id}",
                context=ErrorContext(job_id=job_id, user_id=user_id),
            )
        return job

    async def get_job(self, job_id: str, user_id: str) -> Job:
        async with self.database.session() as db:
            return await self._load_owned(db, job_id, user_id)

    async def list_jobs(
        self,
        user_id: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        """Jobs of a user, newest first."""
        query = select(Job).where(Job.user_id == user_id)
        if status:
            query = query.where(Job.status == JobStatus(status).value)
        query = query.order_by(Job.created_at.desc()).limit(limit).offset(offset)
        async with self.database.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_job_clips(self, job_id: str, user_id: str) -> List[Clip]:
        async with self.database.session() as db:
            await self._load_owned(db, job_id, user_id)
            result = await db.execute(
                select(Clip).where(Clip.job_id == job_id).order_by(Clip.created_at)
            )
            return list(result.scalars().all())

    async def list_clips(
        self, user_id: str, job_id: Optional[str] = None, include_archived: bool = False
    ) -> List[Clip]:
        query = select(Clip).where(Clip.user_id == user_id)
        if job_id:
            query = query.where(Clip.job_id == job_id)
        if not include_archived:
            query = query.where(Clip.is_archived.is_(False))
        async with self.database.session() as db:
            result = await db.execute(query.order_by(Clip.created_at.desc()))
            return list(result.scalars().all())

    async def get_clip(self, clip_id: str, user_id: str) -> Clip:
        async with self.database.session() as db:
            clip = await db.get(Clip, clip_id)
        if clip is None:
            raise NotFoundError(f"Clip not found: {clip_id}", user_message="Clip not found.")
        if clip.user_id != user_id:
            raise AuthorizationError(
                f"Access denied to clip {clip_id}",
                context=ErrorContext(clip_id=clip_id, user_id=user_id),
            )
        return clip

    # Transitions

    async def _transition(
        self, db: AsyncSession, job_id: str, target: JobStatus, **values: Any
    ) -> bool:
        """Move a job to ``target`` if its current status allows it.

        Returns False when the row was concurrently moved elsewhere.
        """
        result = await db.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.status.in_(sources_for(target)))
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _set_progress(self, job_id: str, progress: int):
        async with self.database.session() as db:
            await db.execute(
                update(Job)
                .where(Job.id == job_id)
                .where(Job.status == JobStatus.PROCESSING.value)
                .values(progress=progress, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # Operations

    async def register_upload(
        self,
        user_id: str,
        stored_path: str,
        size: int,
        raw_metadata: Optional[Dict[str, Any]] = None,
        original_name: Optional[str] = None,
    ) -> Job:
        """
        Create a job for a finished upload.

        Args:
            user_id: Owner of the upload
            stored_path: File name inside the uploads directory
            size: Size in bytes reported by the uploader
            raw_metadata: Probe output captured at upload time, if any
            original_name: Name of the file on the client

        Returns:
            The new job in ``uploaded`` status
        """
        source = self.files.upload_path(stored_path)
        if not source.is_file():
            raise ValidationError(
                f"Uploaded file not found: {stored_path}",
                context=ErrorContext(user_id=user_id, path=stored_path, operation="register_upload"),
            )

        now = utcnow()
        job = Job(
            user_id=user_id,
            input_file=stored_path,
            status=JobStatus.UPLOADED.value,
            settings=json.dumps(
                {
                    "original_name": original_name or source.name,
                    "size": size,
                    "metadata": raw_metadata or {},
                }
            ),
            output_files="[]",
            progress=0,
            credits_charged=0,
            created_at=now,
            updated_at=now,
        )
        async with self.database.session() as db:
            db.add(job)
            await db.commit()

        logger.info(f"Registered upload {stored_path} as job {job.id} for user {user_id}")
        await self._log_activity(user_id, "upload", job.id, original_name=original_name, size=size)
        return job

    def resolve_clip_duration(self, options: ProcessOptions) -> int:
        duration = options.custom_duration or options.duration or self.settings.DEFAULT_CLIP_DURATION
        return max(int(duration), self.settings.MIN_CLIP_DURATION)

    async def _source_duration(self, job: Job) -> float:
        metadata = job.settings_dict.get("metadata") or {}
        try:
            duration = float(metadata.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0.0
        if duration > 0:
            return duration

        probed = await self.metadata_reader(str(self.files.upload_path(job.input_file)))
        return float(probed["duration"])

    async def request_processing(self, job_id: str, user_id: str, options: ProcessOptions) -> Job:
        """
        Charge credits and queue a job for clip production.

        The status change and the debit commit together; when the debit
        fails the job stays ``uploaded`` and nothing is charged.

        Raises:
            JobBusyError: the job is already processing
            InvalidTransitionError: the job cannot be (re)processed
            InsufficientCreditsError: the balance does not cover the cost
        """
        async with self._lock_for(job_id):
            async with self.database.session() as db:
                job = await self._load_owned(db, job_id, user_id)

            context = ErrorContext(job_id=job_id, user_id=user_id, operation="request_processing")
            if job.status == JobStatus.PROCESSING.value:
                raise JobBusyError(
                    f"Job {job_id} is already processing",
                    context=context,
                    user_message="This job is already being processed.",
                )
            if not can_transition(job.status, JobStatus.PROCESSING.value):
                raise InvalidTransitionError(
                    f"Invalid job transition: {job.status} -> processing", context=context
                )

            clip_duration = self.resolve_clip_duration(options)
            total_duration = await self._source_duration(job)

            subtitle_path = None
            if options.generate_subtitles:
                sidecar = self.files.subtitle_sidecar(job.input_file)
                if sidecar is None:
                    raise ValidationError(
                        f"Subtitles requested but no subtitle file uploaded for job {job_id}",
                        context=context,
                        user_message="Upload a .srt subtitle file with the video to burn in subtitles.",
                    )
                subtitle_path = str(sidecar)

            planned = len(plan_segments(total_duration, clip_duration, self.settings.MIN_CLIP_DURATION))
            if planned == 0:
                raise ValidationError(
                    f"Video too short to produce clips: {total_duration:.1f}s",
                    context=context,
                )
            cost = calculate_credit_cost(total_duration, planned)

            job_settings = job.settings_dict
            job_settings["processing"] = {
                **asdict(options),
                "clip_duration": clip_duration,
                "source_duration": total_duration,
                "planned_clips": planned,
                "subtitle_path": subtitle_path,
            }

            async with self.ledger.user_lock(user_id):
                async with self.database.session() as db:
                    async with db.begin():
                        moved = await self._transition(
                            db,
                            job_id,
                            JobStatus.PROCESSING,
                            progress=0,
                            credits_charged=cost,
                            error_message=None,
                            settings=json.dumps(job_settings),
                        )
                        if not moved:
                            raise InvalidTransitionError(
                                f"Job {job_id} changed status before processing could start",
                                context=context,
                            )
                        await self.ledger.debit(
                            user_id,
                            cost,
                            description=f"Video processing ({planned} clips)",
                            job_id=job_id,
                            session=db,
                        )

            logger.info(f"Job {job_id}: charged {cost} credits for {planned} clips")
            await self.queue.add_job(job_id)

        await self._log_activity(user_id, "process", job_id, cost=cost, planned_clips=planned)
        return await self.get_job(job_id, user_id)

    async def execute(self, job_id: str):
        """Run a queued job to completion. Called by a queue worker."""
        async with self.database.session() as db:
            job = await db.get(Job, job_id)
        if job is None or job.status != JobStatus.PROCESSING.value:
            logger.info(f"Job {job_id} is no longer processing, skipping")
            return

        processing = job.settings_dict.get("processing", {})
        await self._set_progress(job_id, INTAKE_PROGRESS)

        async def on_segment_done(done: int, planned: int, clip: Clip):
            await self._set_progress(job_id, segment_progress(done, planned))
            if self.queue.is_cancelled(job_id):
                raise JobCancelledError(f"Job {job_id} was cancelled", context=ErrorContext(job_id=job_id))

        async def on_process(process):
            await self.queue.register_process(job_id, process)

        try:
            source = self.files.upload_path(job.input_file)
            total_duration = processing.get("source_duration") or await self._source_duration(job)
            clips = await self.splitter.split(
                job_id,
                job.user_id,
                str(source),
                total_duration,
                processing.get("clip_duration", self.settings.DEFAULT_CLIP_DURATION),
                generate_subtitles=processing.get("generate_subtitles", False),
                subtitle_path=processing.get("subtitle_path"),
                on_segment_done=on_segment_done,
                process_callback=on_process,
            )
        except JobCancelledError:
            logger.info(f"Job {job_id} stopped after cancellation")
            return
        except Exception as e:
            if self.queue.is_cancelled(job_id):
                logger.info(f"Job {job_id} aborted by cancellation: {e}")
                return
            await self._fail(job, e)
            return

        outputs = [
            {
                "id": clip.id,
                "filename": clip.filename,
                "thumbnail": clip.thumbnail,
                "duration": clip.duration,
                "size": clip.size,
            }
            for clip in clips
        ]
        async with self.database.session() as db:
            async with db.begin():
                completed = await self._transition(
                    db,
                    job_id,
                    JobStatus.COMPLETED,
                    progress=100,
                    completed_at=utcnow(),
                    output_files=json.dumps(outputs),
                )
        if completed:
            logger.info(f"Job {job_id} completed with {len(clips)} clips")
        else:
            logger.info(f"Job {job_id} finished but was no longer processing")

    async def _fail(self, job: Job, error: BaseException, refund_reason: Optional[str] = None):
        app_error = self.error_handler.enrich(error)
        app_error.context.job_id = app_error.context.job_id or job.id
        app_error.context.user_id = app_error.context.user_id or job.user_id

        refund = self.settings.REFUND_ON_FAILURE and job.credits_charged > 0
        # The failed status and the refund commit together
        async with self.ledger.user_lock(job.user_id):
            async with self.database.session() as db:
                async with db.begin():
                    failed = await self._transition(
                        db,
                        job.id,
                        JobStatus.FAILED,
                        error_message=app_error.message,
                        completed_at=utcnow(),
                    )
                    if failed and refund:
                        await self.ledger.refund(
                            job.user_id,
                            job.credits_charged,
                            job.id,
                            refund_reason or "processing failed",
                            session=db,
                        )
        if not failed:
            logger.info(f"Job {job.id} left processing before it could be marked failed")
            return

        logger.error(f"Job {job.id} failed: {app_error.message}")
        await self.error_handler.handle(app_error)

    async def cancel(self, job_id: str, user_id: str) -> Job:
        """Cancel a job that has not finished; a running ffmpeg is killed."""
        async with self.database.session() as db:
            async with db.begin():
                job = await self._load_owned(db, job_id, user_id)
                if not can_transition(job.status, JobStatus.CANCELLED.value):
                    raise InvalidTransitionError(
                        f"Invalid job transition: {job.status} -> cancelled",
                        context=ErrorContext(job_id=job_id, user_id=user_id, operation="cancel"),
                    )
                was_processing = job.status == JobStatus.PROCESSING.value
                cancelled = await self._transition(
                    db,
                    job_id,
                    JobStatus.CANCELLED,
                    error_message="Cancelled by user",
                    completed_at=utcnow(),
                )
        if not cancelled:
            raise InvalidTransitionError(
                f"Job {job_id} finished before it could be cancelled",
                context=ErrorContext(job_id=job_id, user_id=user_id, operation="cancel"),
            )

        if was_processing:
            await self.queue.cancel_job(job_id)
        logger.info(f"Cancelled job {job_id}")
        await self._log_activity(user_id, "cancel", job_id)
        return await self.get_job(job_id, user_id)

    async def delete_job(self, job_id: str, user_id: str) -> int:
        """
        Delete a job, its clips and every file they own.

        Returns:
            Number of clips removed
        """
        job = await self.get_job(job_id, user_id)
        if job.status == JobStatus.PROCESSING.value:
            try:
                await self.cancel(job_id, user_id)
            except InvalidTransitionError:
                # Finished in the meantime; nothing left to stop
                pass

        async with self.database.session() as db:
            async with db.begin():
                result = await db.execute(select(Clip).where(Clip.job_id == job_id))
                clips = list(result.scalars().all())
                await db.execute(delete(Clip).where(Clip.job_id == job_id))
                await db.execute(delete(Job).where(Job.id == job_id))

        for clip in clips:
            self.files.delete_clip_artifacts(clip.filename, clip.thumbnail)
        source = self.files.upload_path(job.input_file)
        self.files.delete_artifacts(source, source.with_suffix(".srt"))

        logger.info(f"Deleted job {job_id} with {len(clips)} clips")
        await self._log_activity(user_id, "delete", job_id, clips=len(clips))
        return len(clips)

    async def delete_clip(self, clip_id: str, user_id: str):
        clip = await self.get_clip(clip_id, user_id)
        async with self.database.session() as db:
            await db.execute(delete(Clip).where(Clip.id == clip_id))
            await db.commit()
        self.files.delete_clip_artifacts(clip.filename, clip.thumbnail)
        logger.info(f"Deleted clip {clip_id}")
        await self._log_activity(user_id, "delete", clip_id, resource_type="clip")

    async def delete_clips(self, clip_ids: List[str], user_id: str) -> int:
        """
        Delete several of a user's clips at once.

        Ids that are unknown or belong to someone else are ignored.

        Returns:
            Number of clips removed

        Raises:
            NotFoundError: if none of the ids is one of the user's clips
        """
        async with self.database.session() as db:
            async with db.begin():
                result = await db.execute(
                    select(Clip).where(Clip.id.in_(clip_ids)).where(Clip.user_id == user_id)
                )
                clips = list(result.scalars().all())
                if not clips:
                    raise NotFoundError(
                        f"No clips found for user {user_id}",
                        context=ErrorContext(user_id=user_id, operation="bulk_delete"),
                        user_message="No clips found.",
                    )
                await db.execute(delete(Clip).where(Clip.id.in_([clip.id for clip in clips])))

        for clip in clips:
            self.files.delete_clip_artifacts(clip.filename, clip.thumbnail)
            await self._log_activity(user_id, "bulk_delete", clip.id, resource_type="clip")
        logger.info(f"Bulk deleted {len(clips)} clips for user {user_id}")
        return len(clips)

    async def clip_file(self, clip_id: str, user_id: str) -> Tuple[Clip, Path]:
        """Owned clip with the path of its video file."""
        clip = await self.get_clip(clip_id, user_id)
        path = self.files.clip_path(clip.filename)
        if clip.is_archived or not path.is_file():
            raise NotFoundError(
                f"Clip file not found: {clip.filename}",
                context=ErrorContext(clip_id=clip_id, user_id=user_id, path=str(path)),
                user_message="The clip file is no longer available.",
            )
        await self._log_activity(user_id, "download", clip_id, resource_type="clip")
        return clip, path

    async def clip_thumbnail(self, clip_id: str, user_id: str) -> Path:
        clip = await self.get_clip(clip_id, user_id)
        path = self.files.thumbnail_path(clip.thumbnail) if clip.thumbnail else None
        if path is None or not path.is_file():
            raise NotFoundError(
                f"Thumbnail not found for clip {clip_id}",
                context=ErrorContext(clip_id=clip_id, user_id=user_id),
                user_message="Thumbnail not found.",
            )
        return path

    async def recover_interrupted_jobs(self) -> int:
        """Fail and refund jobs a previous process left in ``processing``."""
        async with self.database.session() as db:
            result = await db.execute(select(Job).where(Job.status == JobStatus.PROCESSING.value))
            jobs = list(result.scalars().all())

        for job in jobs:
            logger.warning(f"Job {job.id} was interrupted by a restart")
            await self._fail(
                job,
                AppError(
                    "Interrupted by service restart",
                    context=ErrorContext(job_id=job.id, user_id=job.user_id, operation="recover"),
                ),
                refund_reason="interrupted by service restart",
            )
        return len(jobs)

    async def _log_activity(
        self,
        user_id: str,
        action: str,
        resource_id: str,
        resource_type: str = "job",
        **metadata: Any,
    ):
        try:
            async with self.database.session() as db:
                db.add(
                    ActivityLog(
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        activity_metadata=json.dumps(metadata, default=str),
                        created_at=utcnow(),
                    )
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to record {action} activity for {resource_id}: {e}")
