"""
Shared fixtures: isolated settings, an initialised database and fakes for
the ffmpeg/ffprobe boundary so no test spawns a transcoder.
"""

import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from app.config import Settings
from app.context import build_context
from app.errors import MediaProcessingError


class FakeTranscoder:
    """Writes placeholder files instead of running ffmpeg."""

    def __init__(self):
        self.cuts: List[dict] = []
        self.thumbnails: List[dict] = []
        self.fail_on_cut: Optional[int] = None
        self.failure: Exception = MediaProcessingError(
            "ffmpeg video processing failed with exit code 1: conversion failed"
        )
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def cut_segment(
        self,
        source,
        output,
        start,
        duration,
        subtitle_path=None,
        progress_callback=None,
        process_callback=None,
    ):
        self.cuts.append(
            {
                "source": source,
                "output": output,
                "start": start,
                "duration": duration,
                "subtitle_path": subtitle_path,
            }
        )
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_on_cut is not None and len(self.cuts) == self.fail_on_cut:
            raise self.failure
        Path(output).write_bytes(b"\x00" * 2048)

    async def capture_thumbnail(self, source, output, offset, process_callback=None):
        self.thumbnails.append({"source": source, "output": output, "offset": offset})
        Path(output).write_bytes(b"\xff\xd8thumb")


class FakeMetadataReader:
    """Async stand-in for ffprobe returning a fixed duration."""

    def __init__(self, duration: float = 650.0):
        self.duration = duration
        self.calls: List[str] = []

    async def __call__(self, path: str):
        self.calls.append(path)
        return {
            "duration": self.duration,
            "size": 1024,
            "bitrate": 1000,
            "format": "mov,mp4,m4a,3gp,3g2,mj2",
            "video": {"codec": "h264", "width": 1920, "height": 1080, "fps": 30.0, "bitrate": 900},
            "audio": None,
        }


@pytest.fixture
def settings(tmp_path):
    s = Settings.for_root(
        tmp_path,
        LOG_FILE="",
        SCHEDULER_ENABLED=False,
        MAX_CONCURRENT_JOBS=1,
        BACKUP_CONFIG_FILES=[],
    )
    s.ensure_directories()
    return s


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def metadata_reader():
    return FakeMetadataReader()


@pytest.fixture
async def context(settings, transcoder, metadata_reader):
    ctx = build_context(settings, transcoder=transcoder, metadata_reader=metadata_reader)
    await ctx.start(run_workers=False)
    yield ctx
    await ctx.stop()


@pytest.fixture
def make_upload(settings):
    """Place a fake source video (and optional subtitle sidecar) in the uploads dir."""

    def _make(name: str = "video.mp4", subtitles: bool = False) -> str:
        path = Path(settings.UPLOADS_DIR) / name
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        if subtitles:
            path.with_suffix(".srt").write_text("1\n00:00:00,000 --> 00:00:02,000\nHello\n")
        return name

    return _make
