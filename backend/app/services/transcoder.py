"""FFmpeg transcoding engine used to cut clips and capture thumbnails."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, TypedDict

from app.errors import ErrorContext, MediaProcessingError

logger = logging.getLogger(__name__)

# Re-encode parameters applied to every clip
VIDEO_CODEC = "libx264"
VIDEO_PRESET = "fast"
VIDEO_CRF = 23
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"
SUBTITLE_STYLE = "FontSize=24,PrimaryColour=&Hffffff"
THUMBNAIL_SIZE = "320:240"


class SegmentProgress(TypedDict):
    """Progress of a single ffmpeg run."""

    out_time_seconds: float
    percent: float
    speed: str
    status: str


ProgressCallback = Callable[[SegmentProgress], Awaitable[None]]
ProcessCallback = Callable[[asyncio.subprocess.Process], Awaitable[None]]


class Transcoder(Protocol):
    """What the clip splitter needs from a transcoding engine."""

    async def cut_segment(
        self,
        source: str,
        output: str,
        start: float,
        duration: float,
        subtitle_path: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        process_callback: Optional[ProcessCallback] = None,
    ) -> None: ...

    async def capture_thumbnail(
        self,
        source: str,
        output: str,
        offset: float,
        process_callback: Optional[ProcessCallback] = None,
    ) -> None: ...


def escape_filter_path(path: str) -> str:
    """Escape a path for use inside an ffmpeg filter argument."""
    return path.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def build_segment_command(
    binary: str,
    source: str,
    output: str,
    start: float,
    duration: float,
    subtitle_path: Optional[str] = None,
) -> List[str]:
    cmd = [binary, "-y", "-hide_banner", "-loglevel", "error"]
    if subtitle_path:
        # Output seeking keeps source timestamps so subtitles stay aligned
        cmd += ["-i", source, "-ss", f"{start:.3f}"]
    else:
        cmd += ["-ss", f"{start:.3f}", "-i", source]
    cmd += [
        "-t", f"{duration:.3f}",
        "-c:v", VIDEO_CODEC,
        "-preset", VIDEO_PRESET,
        "-crf", str(VIDEO_CRF),
        "-c:a", AUDIO_CODEC,
        "-b:a", AUDIO_BITRATE,
        "-movflags", "+faststart",
    ]
    if subtitle_path:
        cmd += [
            "-vf",
            f"subtitles=filename='{escape_filter_path(subtitle_path)}'"
            f":force_style='{SUBTITLE_STYLE}'",
        ]
    cmd += ["-progress", "pipe:1", "-nostats", output]
    return cmd


def build_thumbnail_command(binary: str, source: str, output: str, offset: float) -> List[str]:
    return [
        binary,
        "-y",
        "-hide_banner",
        "-loglevel", "error",
        "-ss", f"{offset:.3f}",
        "-i", source,
        "-frames:v", "1",
        "-vf", f"scale={THUMBNAIL_SIZE}",
        output,
    ]


class FFmpegTranscoder:
    """Runs ffmpeg as a subprocess per segment."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg"):
        self.ffmpeg_binary = ffmpeg_binary

    async def cut_segment(
        self,
        source: str,
        output: str,
        start: float,
        duration: float,
        subtitle_path: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        process_callback: Optional[ProcessCallback] = None,
    ) -> None:
        """
        Cut ``[start, start + duration)`` out of ``source`` into ``output``.

        Args:
            source: Absolute path to source file
            output: Absolute path to output clip
            start: Start offset in seconds
            duration: Clip length in seconds
            subtitle_path: Optional subtitle file burned into the clip
            progress_callback: Async function called with progress updates
            process_callback: Optional async function called with process object

        Raises:
            MediaProcessingError: if ffmpeg cannot be started or exits non-zero
        """
        cmd = build_segment_command(
            self.ffmpeg_binary, source, output, start, duration, subtitle_path
        )
        context = ErrorContext(path=source, operation="cut_segment").with_extra(
            output=output, start=start, duration=duration
        )
        logger.info(f"Cutting segment {start:.1f}s+{duration:.1f}s: {source} -> {output}")

        progress: SegmentProgress = {
            "out_time_seconds": 0.0,
            "percent": 0.0,
            "speed": "",
            "status": "starting",
        }

        async def on_line(line_str: str):
            # -progress emits key=value lines, each block terminated by progress=
            if "=" not in line_str:
                return
            key, value = line_str.split("=", 1)
            if key == "out_time_us" or key == "out_time_ms":
                try:
                    progress["out_time_seconds"] = int(value) / 1_000_000
                except ValueError:
                    return
                if duration > 0:
                    progress["percent"] = min(progress["out_time_seconds"] / duration * 100, 100.0)
            elif key == "speed":
                progress["speed"] = value
            elif key == "progress":
                progress["status"] = value
                if progress_callback:
                    await progress_callback(progress.copy())

        await self._run(cmd, context, on_line, process_callback)
        if not Path(output).exists():
            raise MediaProcessingError(
                "ffmpeg finished but produced no video clip", context=context
            )

    async def capture_thumbnail(
        self,
        source: str,
        output: str,
        offset: float,
        process_callback: Optional[ProcessCallback] = None,
    ) -> None:
        """Grab one frame at ``offset`` seconds into ``source``."""
        cmd = build_thumbnail_command(self.ffmpeg_binary, source, output, offset)
        context = ErrorContext(path=source, operation="thumbnail").with_extra(
            output=output, offset=offset
        )
        await self._run(cmd, context, None, process_callback)

    async def _run(
        self,
        cmd: List[str],
        context: ErrorContext,
        on_line: Optional[Callable[[str], Awaitable[None]]],
        process_callback: Optional[ProcessCallback],
    ) -> None:
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise MediaProcessingError(
                f"Failed to start ffmpeg: {e}", context=context, cause=e
            ) from e

        # Store process reference for cancellation
        if process_callback:
            await process_callback(process)

        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())

        async for line in process.stdout:
            if on_line:
                await on_line(line.decode(errors="replace").strip())

        await process.wait()
        stderr_output = (await stderr_task).decode(errors="replace").strip()

        if process.returncode != 0:
            logger.error(f"ffmpeg exited with code {process.returncode}: {stderr_output[-500:]}")
            raise MediaProcessingError(
                f"ffmpeg video processing failed with exit code {process.returncode}: "
                f"{stderr_output[-300:]}",
                context=context.with_extra(returncode=process.returncode),
            )
