"""Tests for the ffmpeg wrappers in worker.transcoder."""

import asyncio
import json
import math
from unittest.mock import AsyncMock, patch

import pytest

from config import QUALITY_NAMES
from worker.transcoder import (
    MAX_DURATION_SECONDS,
    TranscodeError,
    build_ladder_command,
    choose_segment_duration,
    convert_to_mp4,
    generate_thumbnail,
    needs_conversion,
    probe_duration,
    run_ffmpeg,
    thumbnail_timestamp,
    transcode_to_hls,
    validate_duration,
    validate_hls_playlist,
    write_master_playlist,
)


class FakeProcess:
    """Minimal asyncio.subprocess.Process double."""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", hang=False):
        self.returncode = None
        self._final_returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self._killed = asyncio.Event()
        self.kill_count = 0

    async def communicate(self):
        if self._hang:
            await self._killed.wait()
            self.returncode = -9
            return b"", b""
        self.returncode = self._final_returncode
        return self._stdout, self._stderr

    def kill(self):
        self.kill_count += 1
        self._killed.set()

    async def wait(self):
        return self.returncode


class TestValidateDuration:
    """Tests for validate_duration function."""

    def test_valid_float_duration(self):
        assert validate_duration(120.5) == 120.5

    def test_valid_string_duration(self):
        """ffprobe reports duration as a string in its JSON output."""
        assert validate_duration("63.250000") == 63.25

    def test_none_duration_raises_error(self):
        with pytest.raises(ValueError) as exc_info:
            validate_duration(None)
        assert "Could not determine video duration" in str(exc_info.value)

    def test_invalid_string_raises_error(self):
        with pytest.raises(ValueError) as exc_info:
            validate_duration("N/A")
        assert "Could not convert duration to float" in str(exc_info.value)

    def test_nan_and_inf_raise_error(self):
        with pytest.raises(ValueError):
            validate_duration(math.nan)
        with pytest.raises(ValueError):
            validate_duration(math.inf)

    def test_zero_duration_raises_error(self):
        with pytest.raises(ValueError) as exc_info:
            validate_duration(0)
        assert "must be positive" in str(exc_info.value)

    def test_too_long_raises_error(self):
        with pytest.raises(ValueError) as exc_info:
            validate_duration(MAX_DURATION_SECONDS + 1)
        assert "Duration too long" in str(exc_info.value)


class TestChooseSegmentDuration:
    """Segment length grows with the source duration."""

    @pytest.mark.parametrize(
        "duration,expected",
        [(30, 4), (60, 4), (90, 8), (300, 8), (301, 10), (600, 10), (700, 12), (720, 12)],
    )
    def test_tiers(self, duration, expected):
        assert choose_segment_duration(duration) == expected


class TestNeedsConversion:
    """Only MP4 sources skip the conversion step."""

    def test_mp4_passes_through(self):
        assert needs_conversion("tour.mp4") is False
        assert needs_conversion("TOUR.MP4") is False

    def test_other_containers_are_converted(self):
        for name in ("tour.mov", "tour.mkv", "tour.webm", "tour.avi"):
            assert needs_conversion(name) is True


class TestBuildLadderCommand:
    """Tests for the single-pass ladder command."""

    def test_one_output_per_rung(self, tmp_path):
        cmd = build_ladder_command(tmp_path / "in.mp4", tmp_path / "out", 8)

        assert "[0:v]split=3[v1][v2][v3]" in cmd[cmd.index("-filter_complex") + 1]
        for name in QUALITY_NAMES:
            assert str(tmp_path / "out" / f"{name}.m3u8") in cmd
            assert str(tmp_path / "out" / f"{name}_%03d.ts") in cmd
        assert cmd.count("-f") == 3

    def test_segment_duration_and_vod_type(self, tmp_path):
        cmd = build_ladder_command(tmp_path / "in.mp4", tmp_path / "out", 12)

        hls_times = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-hls_time"]
        assert hls_times == ["12", "12", "12"]
        assert cmd.count("vod") == 3

    def test_scales_to_rung_heights(self, tmp_path):
        cmd = build_ladder_command(tmp_path / "in.mp4", tmp_path / "out", 4)
        filter_complex = cmd[cmd.index("-filter_complex") + 1]

        assert "scale=-2:480" in filter_complex
        assert "scale=-2:720" in filter_complex
        assert "scale=-2:1080" in filter_complex

    def test_audio_is_optional(self, tmp_path):
        cmd = build_ladder_command(tmp_path / "in.mp4", tmp_path / "out", 4)
        assert cmd.count("0:a?") == 3


class TestWriteMasterPlaylist:
    """Tests for the master playlist."""

    def test_references_every_rung(self, tmp_path):
        master = write_master_playlist(tmp_path)
        content = master.read_text()

        assert master.name == "master.m3u8"
        assert content.startswith("#EXTM3U")
        assert content.count("#EXT-X-STREAM-INF") == 3
        for name in QUALITY_NAMES:
            assert f"{name}.m3u8" in content
        assert "BANDWIDTH=800000,RESOLUTION=854x480" in content
        assert "RESOLUTION=1920x1080" in content


class TestValidateHlsPlaylist:
    """Tests for validate_hls_playlist."""

    def _write(self, tmp_path, body, segments=("480p_000.ts",)):
        for name in segments:
            (tmp_path / name).write_bytes(b"data")
        playlist = tmp_path / "480p.m3u8"
        playlist.write_text(body)
        return playlist

    def test_complete_playlist_is_valid(self, tmp_path):
        playlist = self._write(tmp_path, "#EXTM3U\n#EXTINF:4.0,\n480p_000.ts\n#EXT-X-ENDLIST\n")
        assert validate_hls_playlist(playlist) == (True, None)

    def test_missing_file(self, tmp_path):
        is_valid, error = validate_hls_playlist(tmp_path / "nope.m3u8")
        assert not is_valid
        assert "does not exist" in error

    def test_missing_endlist(self, tmp_path):
        playlist = self._write(tmp_path, "#EXTM3U\n#EXTINF:4.0,\n480p_000.ts\n")
        is_valid, error = validate_hls_playlist(playlist)
        assert not is_valid
        assert "ENDLIST" in error

    def test_missing_segment(self, tmp_path):
        playlist = self._write(tmp_path, "#EXTM3U\n#EXTINF:4.0,\n480p_001.ts\n#EXT-X-ENDLIST\n")
        is_valid, error = validate_hls_playlist(playlist)
        assert not is_valid
        assert "480p_001.ts" in error

    def test_no_segments(self, tmp_path):
        playlist = self._write(tmp_path, "#EXTM3U\n#EXT-X-ENDLIST\n", segments=())
        is_valid, error = validate_hls_playlist(playlist)
        assert not is_valid
        assert "no segment" in error


class TestRunFFmpeg:
    """Tests for run_ffmpeg process handling."""

    async def test_success(self):
        process = FakeProcess(returncode=0)
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            await run_ffmpeg(["ffmpeg", "-version"], timeout=5)

    async def test_nonzero_exit_includes_stderr_tail(self):
        process = FakeProcess(returncode=1, stderr=b"moov atom not found\nInvalid data found when processing input")
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(TranscodeError) as exc_info:
                await run_ffmpeg(["ffmpeg"], timeout=5, context="FFmpeg encode")

        message = str(exc_info.value)
        assert message.startswith("FFmpeg encode exited with code 1")
        assert "Invalid data found" in message

    async def test_timeout_kills_process(self):
        process = FakeProcess(hang=True)
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(TranscodeError) as exc_info:
                await run_ffmpeg(["ffmpeg"], timeout=0.05, context="FFmpeg remux")

        assert "timed out" in str(exc_info.value)
        assert process.kill_count >= 1


class TestProbeDuration:
    """Tests for probe_duration."""

    async def test_parses_format_duration(self, tmp_path):
        stdout = json.dumps({"format": {"duration": "721.5"}}).encode()
        process = FakeProcess(returncode=0, stdout=stdout)
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await probe_duration(tmp_path / "in.mp4") == 721.5

    async def test_failure_raises(self, tmp_path):
        process = FakeProcess(returncode=1, stderr=b"Invalid data found when processing input")
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(TranscodeError) as exc_info:
                await probe_duration(tmp_path / "in.mp4")
        assert "ffprobe failed" in str(exc_info.value)

    async def test_missing_duration_raises(self, tmp_path):
        process = FakeProcess(returncode=0, stdout=b'{"format": {}}')
        with patch("worker.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(TranscodeError) as exc_info:
                await probe_duration(tmp_path / "in.mp4")
        assert "unusable duration" in str(exc_info.value)


class TestConvertToMp4:
    """Tests for container normalization."""

    async def test_remux_success(self, tmp_path, fake_ffmpeg):
        output = await convert_to_mp4(tmp_path / "tour.mov", tmp_path / "work")

        assert output == tmp_path / "work" / "converted.mp4"
        assert output.exists()
        assert fake_ffmpeg.contexts() == ["FFmpeg remux"]
        remux_cmd = fake_ffmpeg.calls[0][0]
        assert remux_cmd[remux_cmd.index("-c:v") + 1] == "copy"

    async def test_falls_back_to_reencode(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.fail_contexts.add("FFmpeg remux")

        output = await convert_to_mp4(tmp_path / "tour.avi", tmp_path / "work")

        assert output.exists()
        assert fake_ffmpeg.contexts() == ["FFmpeg remux", "FFmpeg re-encode"]
        reencode_cmd = fake_ffmpeg.calls[1][0]
        assert reencode_cmd[reencode_cmd.index("-c:v") + 1] == "libx264"

    async def test_both_attempts_fail(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.fail_contexts.update({"FFmpeg remux", "FFmpeg re-encode"})

        with pytest.raises(TranscodeError) as exc_info:
            await convert_to_mp4(tmp_path / "broken.mov", tmp_path / "work")

        assert "Container conversion failed" in str(exc_info.value)
        assert not (tmp_path / "work" / "converted.mp4").exists()


class TestTranscodeToHls:
    """Tests for the full probe + ladder + master flow."""

    async def test_twelve_minute_video_uses_twelve_second_segments(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.duration = 720.0

        hls = await transcode_to_hls(tmp_path / "in.mp4", tmp_path / "hls")

        assert hls.segment_duration == 12
        assert fake_ffmpeg.hls_time() == 12
        assert set(hls.quality_playlists) == set(QUALITY_NAMES)
        master = hls.master_playlist.read_text()
        for name in QUALITY_NAMES:
            assert f"{name}.m3u8" in master

    async def test_files_lists_master_last(self, tmp_path, fake_ffmpeg):
        hls = await transcode_to_hls(tmp_path / "in.mp4", tmp_path / "hls")

        files = hls.files()

        assert files[-1] == hls.master_playlist
        assert len(files) == 1 + 3 * (1 + fake_ffmpeg.segments_per_rung)

    async def test_encode_failure_raises(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.fail_contexts.add("FFmpeg encode")
        with pytest.raises(TranscodeError):
            await transcode_to_hls(tmp_path / "in.mp4", tmp_path / "hls")

    async def test_incomplete_playlist_raises(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.segments_per_rung = 0
        with pytest.raises(TranscodeError) as exc_info:
            await transcode_to_hls(tmp_path / "in.mp4", tmp_path / "hls")
        assert "invalid" in str(exc_info.value)


class TestGenerateThumbnail:
    """Tests for poster extraction."""

    def test_timestamp_is_ten_percent_in(self):
        assert thumbnail_timestamp(100) == 10.0
        assert thumbnail_timestamp(0) == 0.0

    async def test_writes_jpeg(self, tmp_path, fake_ffmpeg):
        output = await generate_thumbnail(tmp_path / "in.mp4", tmp_path / "thumbs" / "t.jpg", 12.0)

        assert output.exists()
        cmd = fake_ffmpeg.calls[0][0]
        assert cmd[cmd.index("-ss") + 1] == "12.0"
        assert cmd.index("-ss") < cmd.index("-i")

    async def test_no_output_raises(self, tmp_path):
        with patch("worker.transcoder.run_ffmpeg", AsyncMock(return_value=None)):
            with pytest.raises(TranscodeError) as exc_info:
                await generate_thumbnail(tmp_path / "in.mp4", tmp_path / "t.jpg", 1.0)
        assert "produced no image" in str(exc_info.value)

    async def test_ffmpeg_failure_is_wrapped(self, tmp_path, fake_ffmpeg):
        fake_ffmpeg.fail_contexts.add("FFmpeg thumbnail")
        with pytest.raises(TranscodeError) as exc_info:
            await generate_thumbnail(tmp_path / "in.mp4", tmp_path / "t.jpg", 1.0)
        assert "Thumbnail generation failed" in str(exc_info.value)
