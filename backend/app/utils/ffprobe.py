"""FFprobe wrapper utilities for extracting video metadata."""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, TypedDict

from app.errors import ErrorContext, MediaProcessingError

logger = logging.getLogger(__name__)


class VideoMetadata(TypedDict):
    """Metadata extracted from a source video."""

    duration: float
    size: int
    bitrate: int
    format: str
    video: Optional[Dict[str, Any]]
    audio: Optional[Dict[str, Any]]


async def get_video_info(file_path: str, ffprobe_binary: str = "ffprobe") -> VideoMetadata:
    """
    Get video metadata using ffprobe.

    Args:
        file_path: Path to video file
        ffprobe_binary: ffprobe executable to run

    Returns:
        Dictionary with video metadata

    Raises:
        MediaProcessingError: if ffprobe fails or the file has no video stream
    """
    context = ErrorContext(path=file_path, operation="probe")
    try:
        # Run ffprobe to get JSON output
        process = await asyncio.create_subprocess_exec(
            ffprobe_binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
    except OSError as e:
        raise MediaProcessingError(
            f"Failed to run ffprobe: {e}",
            context=context,
            user_message="Unable to read the video metadata.",
            cause=e,
        ) from e

    if process.returncode != 0:
        logger.error(f"FFprobe failed for {file_path}: {stderr.decode(errors='replace')}")
        raise MediaProcessingError(
            f"Failed to read video metadata (ffprobe exit code {process.returncode})",
            context=context.with_extra(stderr=stderr.decode(errors="replace")[-500:]),
            user_message="Unable to read the video metadata.",
        )

    try:
        data = json.loads(stdout.decode())
    except ValueError as e:
        raise MediaProcessingError(
            f"Unreadable ffprobe output for video: {e}", context=context, cause=e
        ) from e

    return parse_probe_output(data, file_path)


def parse_probe_output(data: Dict[str, Any], file_path: str = "") -> VideoMetadata:
    """Turn raw ffprobe JSON into ``VideoMetadata``."""
    streams = data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    if not video_stream:
        raise MediaProcessingError(
            "No video stream found in file",
            context=ErrorContext(path=file_path, operation="probe"),
            user_message="The uploaded file does not contain a video stream.",
        )

    format_info = data.get("format", {})

    return {
        "duration": _to_float(format_info.get("duration")),
        "size": int(_to_float(format_info.get("size"))),
        "bitrate": int(_to_float(format_info.get("bit_rate"))),
        "format": format_info.get("format_name", "unknown"),
        "video": {
            "codec": video_stream.get("codec_name", "unknown"),
            "width": video_stream.get("width", 0),
            "height": video_stream.get("height", 0),
            "fps": eval_fps(video_stream.get("r_frame_rate", "0/1")),
            "bitrate": int(_to_float(video_stream.get("bit_rate"))),
        },
        "audio": {
            "codec": audio_stream.get("codec_name", "unknown"),
            "channels": audio_stream.get("channels", 0),
            "sample_rate": int(_to_float(audio_stream.get("sample_rate"))),
            "bitrate": int(_to_float(audio_stream.get("bit_rate"))),
        }
        if audio_stream
        else None,
    }


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def eval_fps(fps_string: str) -> float:
    """
    Evaluate FPS from fraction string (e.g., "30000/1001").

    Args:
        fps_string: FPS as fraction string

    Returns:
        FPS as float
    """
    try:
        if "/" in fps_string:
            num, den = fps_string.split("/")
            return float(num) / float(den)
        return float(fps_string)
    except (ValueError, ZeroDivisionError, TypeError):
        return 0.0
