"""Clip API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse

from app.context import AppContext, get_context, get_current_user
from app.models.schemas import BulkDeleteRequest, ClipResponse, DeleteResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[ClipResponse])
async def list_clips(
    job_id: Optional[str] = Query(None),
    include_archived: bool = Query(False),
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    clips = await ctx.jobs.list_clips(user_id, job_id=job_id, include_archived=include_archived)
    return [ClipResponse.model_validate(clip) for clip in clips]


@router.post("/bulk-delete", response_model=DeleteResponse)
async def bulk_delete_clips(
    request: BulkDeleteRequest,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """Delete several clips; ids the user does not own are skipped."""
    deleted = await ctx.jobs.delete_clips(request.clip_ids, user_id)
    return DeleteResponse(deleted_clips=deleted)


@router.get("/{clip_id}", response_model=ClipResponse)
async def get_clip(
    clip_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    return ClipResponse.model_validate(await ctx.jobs.get_clip(clip_id, user_id))


@router.get("/{clip_id}/download")
async def download_clip(
    clip_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """
    Download the clip video.

    Args:
        clip_id: Clip identifier
        user_id: Acting user, must own the clip
        ctx: Application context

    Returns:
        The MP4 file as an attachment
    """
    clip, path = await ctx.jobs.clip_file(clip_id, user_id)
    logger.info(f"User {user_id} downloading clip {clip_id}")
    return FileResponse(path, media_type="video/mp4", filename=clip.filename)


@router.get("/{clip_id}/thumbnail")
async def get_thumbnail(
    clip_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    path = await ctx.jobs.clip_thumbnail(clip_id, user_id)
    return FileResponse(path, media_type="image/jpeg")


@router.delete("/{clip_id}", response_model=DeleteResponse)
async def delete_clip(
    clip_id: str,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    await ctx.jobs.delete_clip(clip_id, user_id)
    return DeleteResponse(deleted_clips=1)
