"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, settings as default_settings
from app.context import build_context
from app.errors import AppError
from app.services.error_handler import RequestContext
from app.services.job_service import MetadataReader
from app.services.transcoder import Transcoder

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    """Console logging plus a file in ``LOGS_DIR`` for the log archive sweep."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    root = logging.getLogger()

    # Ensure logging output if Uvicorn hijacked the root logger but didn't set level/handlers as expected
    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)

    if settings.LOG_FILE:
        log_path = Path(settings.LOGS_DIR) / settings.LOG_FILE
        already = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path.resolve()
            for h in root.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)


def create_app(
    settings: Optional[Settings] = None,
    transcoder: Optional[Transcoder] = None,
    metadata_reader: Optional[MetadataReader] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration, the environment-derived default if omitted
        transcoder: Engine override (tests pass a fake)
        metadata_reader: Probe override (tests pass a fake)

    Returns:
        Configured application; services start in the lifespan
    """
    settings = settings or default_settings
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("Starting clip service...")
        context = build_context(settings, transcoder=transcoder, metadata_reader=metadata_reader)
        app.state.context = context
        await context.start()

        yield

        logger.info("Shutting down clip service...")
        await context.stop()

    app = FastAPI(
        title="Clip Service",
        description="Splits uploaded videos into clips, metered by per-user credits",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add GZip Middleware
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        handled = await request.app.state.context.error_handler.handle(
            exc,
            RequestContext(
                user_id=request.headers.get("x-user-id"),
                request_id=request.headers.get("x-request-id"),
                url=str(request.url),
                method=request.method,
                headers=dict(request.headers),
            ),
        )
        return JSONResponse(status_code=handled.http_status, content={"error": handled.to_dict()})

    # Include routers
    from app.routes import clips, credits, jobs, system  # noqa: E402

    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
    app.include_router(clips.router, prefix="/api/clips", tags=["clips"])
    app.include_router(credits.router, prefix="/api/credits", tags=["credits"])
    app.include_router(system.router, prefix="/api/system", tags=["system"])

    return app
