"""Health, error statistics, storage and maintenance endpoints."""

import asyncio
import logging

from fastapi import APIRouter, Depends

from app.context import AppContext, get_admin_user, get_context
from app.errors import ErrorContext, NotFoundError
from app.models.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(ctx: AppContext = Depends(get_context)):
    """Health check endpoint."""
    sample = ctx.reclaimer.last_sample
    return HealthResponse(
        status=sample.status if sample else "healthy",
        queue=ctx.queue.get_queue_status(),
        scheduler=ctx.scheduler.get_status(),
        last_sample=sample.to_dict() if sample else None,
    )


@router.get("/errors/stats")
async def error_stats(ctx: AppContext = Depends(get_context)):
    return ctx.error_handler.get_stats()


@router.get("/storage")
async def storage_stats(ctx: AppContext = Depends(get_context)):
    """Bytes used per managed directory."""
    return await asyncio.to_thread(ctx.files.get_storage_stats)


@router.post("/sweeps/{name}")
async def run_sweep(
    name: str,
    user_id: str = Depends(get_admin_user),
    ctx: AppContext = Depends(get_context),
):
    """Run one maintenance sweep now and return its result (admins only)."""
    if name not in ctx.reclaimer.sweeps:
        raise NotFoundError(
            f"Unknown maintenance task: {name}",
            context=ErrorContext(operation="run_sweep").with_extra(task=name),
            user_message="Unknown maintenance task.",
        )
    result = await ctx.scheduler.run_now(name)
    logger.info(f"Manual run of {name} by {user_id} finished")
    status = ctx.scheduler.get_status()[name]
    return {
        "name": name,
        "result": result.to_dict() if result is not None else None,
        "last_error": status["last_error"],
    }
