"""Tests for ffmpeg command construction and ffprobe parsing."""

import shutil

import pytest

from app.errors import ErrorType, MediaProcessingError
from app.services.transcoder import (
    FFmpegTranscoder,
    build_segment_command,
    build_thumbnail_command,
    escape_filter_path,
)
from app.utils.ffprobe import eval_fps, parse_probe_output


class TestSegmentCommand:
    def test_input_seeking_without_subtitles(self):
        cmd = build_segment_command("ffmpeg", "/in.mp4", "/out.mp4", 300, 30)

        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "300.000"
        assert cmd[cmd.index("-t") + 1] == "30.000"
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert "-vf" not in cmd
        assert cmd[-1] == "/out.mp4"

    def test_output_seeking_with_subtitles(self):
        cmd = build_segment_command("ffmpeg", "/in.mp4", "/out.mp4", 60, 30, "/subs/a:b.srt")

        assert cmd.index("-i") < cmd.index("-ss")
        vf = cmd[cmd.index("-vf") + 1]
        assert vf.startswith("subtitles=filename='/subs/a\\:b.srt'")
        assert "force_style=" in vf

    def test_thumbnail_command(self):
        cmd = build_thumbnail_command("ffmpeg", "/clip.mp4", "/thumb.jpg", 3)

        assert cmd[cmd.index("-frames:v") + 1] == "1"
        assert cmd[cmd.index("-vf") + 1] == "scale=320:240"
        assert cmd[cmd.index("-ss") + 1] == "3.000"

    def test_escape_filter_path(self):
        assert escape_filter_path("C:\\it's") == "C\\:\\\\it\\'s"


class TestFFmpegTranscoder:
    async def test_missing_binary(self, tmp_path):
        transcoder = FFmpegTranscoder("definitely-not-ffmpeg")

        with pytest.raises(MediaProcessingError) as exc:
            await transcoder.cut_segment("in.mp4", str(tmp_path / "out.mp4"), 0, 10)

        assert exc.value.type == ErrorType.MEDIA_PROCESSING
        assert "Failed to start ffmpeg" in exc.value.message

    @pytest.mark.skipif(shutil.which("false") is None, reason="needs a false binary")
    async def test_non_zero_exit(self, tmp_path):
        seen = []

        async def on_process(process):
            seen.append(process)

        transcoder = FFmpegTranscoder("false")

        with pytest.raises(MediaProcessingError) as exc:
            await transcoder.capture_thumbnail(
                "in.mp4", str(tmp_path / "t.jpg"), 1, process_callback=on_process
            )

        assert "exit code 1" in exc.value.message
        assert exc.value.context.extra["returncode"] == "1"
        assert len(seen) == 1

    @pytest.mark.skipif(shutil.which("true") is None, reason="needs a true binary")
    async def test_success_without_output_is_an_error(self, tmp_path):
        with pytest.raises(MediaProcessingError, match="produced no video clip"):
            await FFmpegTranscoder("true").cut_segment("in.mp4", str(tmp_path / "out.mp4"), 0, 10)


class TestProbeParsing:
    def test_parses_streams(self):
        data = {
            "format": {"duration": "650.5", "size": "1048576", "bit_rate": "800000", "format_name": "mov,mp4"},
            "streams": [
                {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
                 "r_frame_rate": "30000/1001"},
                {"codec_type": "audio", "codec_name": "aac", "channels": 2, "sample_rate": "48000"},
            ],
        }

        info = parse_probe_output(data, "/in.mp4")

        assert info["duration"] == 650.5
        assert info["size"] == 1048576
        assert info["video"]["codec"] == "h264"
        assert info["video"]["fps"] == pytest.approx(29.97, rel=1e-3)
        assert info["video"]["bitrate"] == 0
        assert info["audio"]["sample_rate"] == 48000

    def test_audio_optional(self):
        info = parse_probe_output({"streams": [{"codec_type": "video"}]})
        assert info["audio"] is None
        assert info["duration"] == 0.0

    def test_no_video_stream(self):
        with pytest.raises(MediaProcessingError) as exc:
            parse_probe_output({"streams": [{"codec_type": "audio"}]}, "/song.mp3")
        assert exc.value.context.path == "/song.mp3"

    @pytest.mark.parametrize(
        "raw, expected",
        [("25/1", 25.0), ("24", 24.0), ("0/0", 0.0), ("garbage", 0.0)],
    )
    def test_eval_fps(self, raw, expected):
        assert eval_fps(raw) == expected
