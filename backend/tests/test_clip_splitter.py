"""Tests for segment planning and clip production."""

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

from app.errors import MediaProcessingError
from app.models.clip import Clip
from app.services.clip_splitter import plan_segments


class TestPlanSegments:
    def test_even_and_trailing_segments(self):
        segments = plan_segments(650, 300)

        assert [(s.start, s.end) for s in segments] == [(0, 300), (300, 600), (600, 650)]
        assert [s.part_number for s in segments] == [1, 2, 3]
        assert segments[-1].duration == 50

    def test_short_trailing_segment_dropped(self):
        segments = plan_segments(605, 300)

        assert len(segments) == 2
        assert segments[-1].end == 600

    def test_remainder_below_minimum_dropped_after_full_segments(self):
        segments = plan_segments(125, 60)

        assert [(s.start, s.end) for s in segments] == [(0, 60), (60, 120)]

    def test_segment_of_exactly_minimum_kept(self):
        assert len(plan_segments(10, 300)) == 1

    def test_too_short_video_yields_nothing(self):
        assert plan_segments(9, 300) == []
        assert plan_segments(0, 300) == []

    def test_custom_minimum(self):
        assert len(plan_segments(305, 300, min_duration=5)) == 2
        assert len(plan_segments(305, 300, min_duration=6)) == 1


@pytest.fixture
async def job(context, make_upload):
    return await context.jobs.register_upload("alice", make_upload(), 1024)


def _source(context, job):
    return str(Path(context.settings.UPLOADS_DIR) / job.input_file)


class TestSplit:
    async def test_persists_every_retained_segment(self, context, transcoder, job):
        progress = []

        async def on_done(done, total, clip):
            progress.append((done, total))

        clips = await context.splitter.split(
            job.id, "alice", _source(context, job), 650, 300, on_segment_done=on_done
        )

        assert len(clips) == 3
        assert progress == [(1, 3), (2, 3), (3, 3)]
        assert [c["start"] for c in transcoder.cuts] == [0, 300, 600]
        assert [c["duration"] for c in transcoder.cuts] == [300, 300, 50]

        async with context.database.session() as db:
            stored = (await db.execute(select(Clip).where(Clip.job_id == job.id))).scalars().all()
        assert len(stored) == 3

        for clip in clips:
            assert clip.filename == f"{clip.id}_part{clip.metadata_dict['part_number']}.mp4"
            assert clip.thumbnail == f"{clip.id}_thumb.jpg"
            assert (Path(context.settings.CLIPS_DIR) / clip.filename).exists()
            assert (Path(context.settings.THUMBNAILS_DIR) / clip.thumbnail).exists()
            assert clip.size == 2048
            assert clip.expires_at - clip.created_at == timedelta(days=30)
            assert not clip.is_archived

    async def test_clip_metadata(self, context, job):
        clips = await context.splitter.split(job.id, "alice", _source(context, job), 650, 300)

        assert clips[2].metadata_dict == {
            "part_number": 3,
            "total_parts": 3,
            "start_time": 600,
            "end_time": 650,
            "original_duration": 650,
            "has_subtitles": False,
        }

    async def test_total_parts_counts_retained_segments(self, context, job):
        clips = await context.splitter.split(job.id, "alice", _source(context, job), 605, 300)

        assert [c.metadata_dict["total_parts"] for c in clips] == [2, 2]

    async def test_thumbnail_taken_at_tenth_of_clip(self, context, transcoder, job):
        await context.splitter.split(job.id, "alice", _source(context, job), 650, 300)

        assert [t["offset"] for t in transcoder.thumbnails] == pytest.approx([30, 30, 5])

    async def test_subtitles_passed_only_when_requested(self, context, transcoder, job):
        srt = str(Path(context.settings.UPLOADS_DIR) / "video.srt")

        await context.splitter.split(
            job.id, "alice", _source(context, job), 300, 300,
            generate_subtitles=False, subtitle_path=srt,
        )
        clips = await context.splitter.split(
            job.id, "alice", _source(context, job), 300, 300,
            generate_subtitles=True, subtitle_path=srt,
        )

        assert [c["subtitle_path"] for c in transcoder.cuts] == [None, srt]
        assert clips[0].metadata_dict["has_subtitles"] is True

    async def test_failure_aborts_and_keeps_earlier_clips(self, context, transcoder, job):
        transcoder.fail_on_cut = 2

        with pytest.raises(MediaProcessingError):
            await context.splitter.split(job.id, "alice", _source(context, job), 650, 300)

        assert len(transcoder.cuts) == 2
        async with context.database.session() as db:
            stored = (await db.execute(select(Clip).where(Clip.job_id == job.id))).scalars().all()
        assert [c.metadata_dict["part_number"] for c in stored] == [1]

    async def test_unexpected_errors_become_media_errors(self, context, transcoder, job):
        transcoder.fail_on_cut = 1
        transcoder.failure = OSError("device not ready")

        with pytest.raises(MediaProcessingError) as exc_info:
            await context.splitter.split(job.id, "alice", _source(context, job), 650, 300)

        assert isinstance(exc_info.value.cause, OSError)
        assert exc_info.value.context.job_id == job.id
