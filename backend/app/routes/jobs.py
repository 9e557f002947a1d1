"""Job management API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.context import AppContext, get_context, get_current_user
from app.models.job import JobStatus
from app.models.schemas import (
    ClipResponse,
    DeleteResponse,
    JobListResponse,
    JobResponse,
    ProcessRequest,
    UploadEvent,
)
from app.services.job_service import ProcessOptions

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/uploads", response_model=JobResponse, status_code=201)
async def register_upload(
    event: UploadEvent,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """
    Register a finished upload as a new job.

    Args:
        event: Upload-completed event
        user_id: Acting user
        ctx: Application context

    Returns:
        The created job
    """
    job = await ctx.jobs.register_upload(
        user_id,
        event.stored_path,
        event.size,
        raw_metadata=event.metadata,
        original_name=event.original_name,
    )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/process", response_model=JobResponse, status_code=202)
async def process_job(
    job_id: str,
    request: ProcessRequest,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """Charge credits and queue the job; returns before any clip is cut."""
    job = await ctx.jobs.request_processing(
        job_id, user_id, ProcessOptions(**request.model_dump())
    )
    return JobResponse.model_validate(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """List the user's jobs, newest first."""
    jobs = await ctx.jobs.list_jobs(user_id, status=status, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    return JobResponse.model_validate(await ctx.jobs.get_job(job_id, user_id))


@router.get("/{job_id}/clips", response_model=List[ClipResponse])
async def get_job_clips(
    job_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    clips = await ctx.jobs.get_job_clips(job_id, user_id)
    return [ClipResponse.model_validate(clip) for clip in clips]


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """Cancel an uploaded or processing job."""
    job = await ctx.jobs.cancel(job_id, user_id)
    return JobResponse.model_validate(job)


@router.delete("/{job_id}", response_model=DeleteResponse)
async def delete_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """
    Delete a job with its clips and files.

    A processing job is cancelled first.
    """
    deleted = await ctx.jobs.delete_job(job_id, user_id)
    logger.info(f"Deleted job {job_id} from history")
    return DeleteResponse(deleted_clips=deleted)
