"""Cuts a source video into fixed-length clips."""

import json
import logging
import math
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from app.config import Settings
from app.database import Database, utcnow
from app.errors import AppError, ErrorContext, MediaProcessingError
from app.models.clip import Clip
from app.services.transcoder import ProcessCallback, Transcoder

logger = logging.getLogger(__name__)

# Thumbnail offset as a fraction of the clip's own duration
THUMBNAIL_POSITION = 0.1

SegmentDoneCallback = Callable[[int, int, Clip], Awaitable[None]]


@dataclass(frozen=True)
class Segment:
    index: int
    part_number: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def plan_segments(total_duration: float, clip_duration: float, min_duration: float = 10) -> List[Segment]:
    """
    Split ``[0, total_duration)`` into consecutive segments.

    Segments shorter than ``min_duration`` (normally only the trailing one)
    are dropped.

    Args:
        total_duration: Source duration in seconds
        clip_duration: Target clip length in seconds
        min_duration: Shortest segment worth keeping

    Returns:
        Retained segments in index order
    """
    if clip_duration <= 0 or total_duration <= 0:
        return []

    segments = []
    for index in range(math.ceil(total_duration / clip_duration)):
        start = index * clip_duration
        end = min(start + clip_duration, total_duration)
        if end - start < min_duration:
            logger.debug(f"Skipping segment {index + 1}: {end - start:.1f}s is below the minimum")
            continue
        segments.append(Segment(index=index, part_number=index + 1, start=start, end=end))
    return segments


class ClipSplitter:
    """Transcodes each planned segment and persists it as a ``Clip``."""

    def __init__(self, database: Database, transcoder: Transcoder, settings: Settings):
        self.database = database
        self.transcoder = transcoder
        self.clips_dir = Path(settings.CLIPS_DIR)
        self.thumbnails_dir = Path(settings.THUMBNAILS_DIR)
        self.min_clip_duration = settings.MIN_CLIP_DURATION

    async def split(
        self,
        job_id: str,
        user_id: str,
        input_path: str,
        total_duration: float,
        clip_duration: float,
        generate_subtitles: bool = False,
        subtitle_path: Optional[str] = None,
        on_segment_done: Optional[SegmentDoneCallback] = None,
        process_callback: Optional[ProcessCallback] = None,
    ) -> List[Clip]:
        """
        Produce and persist every retained segment, in order.

        Each clip row is committed as soon as its files exist, so a failure
        part-way leaves the earlier clips in place for the reclaimer.

        Raises:
            MediaProcessingError: on the first segment that fails
        """
        segments = plan_segments(total_duration, clip_duration, self.min_clip_duration)
        burn_subtitles = subtitle_path if generate_subtitles else None
        clips: List[Clip] = []

        logger.info(
            f"Job {job_id}: splitting {input_path} ({total_duration:.1f}s) "
            f"into {len(segments)} clips of {clip_duration}s"
        )

        for segment in segments:
            try:
                clip = await self._produce(
                    job_id,
                    user_id,
                    input_path,
                    segment,
                    total_parts=len(segments),
                    original_duration=total_duration,
                    subtitle_path=burn_subtitles,
                    process_callback=process_callback,
                )
            except AppError:
                raise
            except Exception as e:
                raise MediaProcessingError(
                    f"Failed to produce video clip {segment.part_number}: {e}",
                    context=ErrorContext(job_id=job_id, user_id=user_id, path=input_path).with_extra(
                        part_number=segment.part_number
                    ),
                    cause=e,
                ) from e

            clips.append(clip)
            if on_segment_done:
                await on_segment_done(len(clips), len(segments), clip)

        return clips

    async def _produce(
        self,
        job_id: str,
        user_id: str,
        input_path: str,
        segment: Segment,
        total_parts: int,
        original_duration: float,
        subtitle_path: Optional[str],
        process_callback: Optional[ProcessCallback],
    ) -> Clip:
        clip_id = str(uuid.uuid4())
        filename = f"{clip_id}_part{segment.part_number}.mp4"
        thumbnail = f"{clip_id}_thumb.jpg"
        output_path = self.clips_dir / filename

        await self.transcoder.cut_segment(
            input_path,
            str(output_path),
            segment.start,
            segment.duration,
            subtitle_path=subtitle_path,
            process_callback=process_callback,
        )
        await self.transcoder.capture_thumbnail(
            str(output_path),
            str(self.thumbnails_dir / thumbnail),
            segment.duration * THUMBNAIL_POSITION,
            process_callback=process_callback,
        )

        created_at = utcnow()
        clip = Clip(
            id=clip_id,
            job_id=job_id,
            user_id=user_id,
            filename=filename,
            thumbnail=thumbnail,
            duration=segment.duration,
            size=output_path.stat().st_size,
            clip_metadata=json.dumps(
                {
                    "part_number": segment.part_number,
                    "total_parts": total_parts,
                    "start_time": segment.start,
                    "end_time": segment.end,
                    "original_duration": original_duration,
                    "has_subtitles": subtitle_path is not None,
                }
            ),
            is_archived=False,
            created_at=created_at,
            expires_at=Clip.expiry_for(created_at),
        )
        async with self.database.session() as db:
            db.add(clip)
            await db.commit()

        logger.info(f"Job {job_id}: clip {segment.part_number}/{total_parts} saved as {filename}")
        return clip
