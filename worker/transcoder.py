"""
FFmpeg wrappers that turn one source video into an HLS rendition ladder plus a
poster image.

Every function here only reads its input and writes into the directory it is
given. ffmpeg/ffprobe always run as child processes, so a crash or hang in the
media binary never takes the API process down with it. Hangs are handled by a
wall-clock timeout that kills the child.
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from api.errors import truncate_error
from config import (
    AUDIO_BITRATE,
    ENCODE_TIMEOUT,
    ERROR_DETAIL_MAX_LENGTH,
    FFMPEG_PATH,
    FFPROBE_PATH,
    HLS_GOP_SIZE,
    PROBE_TIMEOUT,
    QUALITY_LADDER,
    REENCODE_TIMEOUT,
    REMUX_TIMEOUT,
    SEGMENT_DURATION_LONG,
    SEGMENT_DURATION_TIERS,
    THUMBNAIL_MAX_WIDTH,
    THUMBNAIL_OFFSET_PERCENT,
    THUMBNAIL_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60

MASTER_PLAYLIST_NAME = "master.m3u8"
CONVERTED_NAME = "converted.mp4"


class TranscodeError(Exception):
    """ffmpeg/ffprobe failed, timed out, or produced unusable output."""


@dataclass
class HlsOutput:
    """Local result of a ladder encode."""

    output_dir: Path
    master_playlist: Path
    quality_playlists: Dict[str, Path] = field(default_factory=dict)
    segment_duration: int = 0
    duration: float = 0.0

    def files(self) -> List[Path]:
        """Every regular file in the output directory, master playlist last."""
        entries = sorted(p for p in self.output_dir.iterdir() if p.is_file())
        return [p for p in entries if p != self.master_playlist] + (
            [self.master_playlist] if self.master_playlist in entries else []
        )


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Clean up an FFmpeg subprocess, handling race conditions where the process
    may exit between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg(cmd: List[str], timeout: float, context: str = "FFmpeg") -> None:
    """
    Run an ffmpeg command to completion under a wall-clock timeout.

    stderr is collected (ffmpeg runs with -loglevel error so it stays small)
    and its tail is attached to the raised error.

    Raises:
        TranscodeError: On timeout or a non-zero exit code
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )

    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        elapsed = asyncio.get_running_loop().time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s), killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    # Killing the process closes its pipes, which lets communicate() return
    timeout_task = asyncio.create_task(timeout_killer())
    try:
        _, stderr = await process.communicate()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        raise TranscodeError(f"{context} timed out after {timeout:.0f}s")

    if process.returncode != 0:
        detail = (stderr or b"").decode("utf-8", errors="ignore").strip()
        # Keep the tail; ffmpeg prints the actual cause last
        detail = truncate_error(detail[-ERROR_DETAIL_MAX_LENGTH:], ERROR_DETAIL_MAX_LENGTH) if detail else ""
        message = f"{context} exited with code {process.returncode}"
        raise TranscodeError(f"{message}: {detail}" if detail else message)


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


async def probe_duration(input_path: Path, timeout: float = PROBE_TIMEOUT) -> float:
    """
    Get the container duration in seconds using ffprobe.

    Raises:
        TranscodeError: If ffprobe fails, times out, or reports an unusable duration
    """
    cmd = [FFPROBE_PATH, "-v", "error", "-print_format", "json", "-show_format", str(input_path)]

    process = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await cleanup_ffmpeg_process(process, "ffprobe")
        raise TranscodeError(f"ffprobe timed out after {timeout}s")

    if process.returncode != 0:
        detail = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
        raise TranscodeError(f"ffprobe failed: {detail}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        return validate_duration(data.get("format", {}).get("duration"))
    except (json.JSONDecodeError, ValueError) as e:
        raise TranscodeError(f"ffprobe returned an unusable duration: {e}") from e


def choose_segment_duration(duration: float) -> int:
    """Short clips get short segments for seek granularity; long ones fewer, larger segments."""
    for max_duration, segment_seconds in SEGMENT_DURATION_TIERS:
        if duration <= max_duration:
            return segment_seconds
    return SEGMENT_DURATION_LONG


def needs_conversion(original_name: str) -> bool:
    """Anything that is not already an MP4 gets normalized first."""
    return Path(original_name).suffix.lower() != ".mp4"


async def convert_to_mp4(input_path: Path, work_dir: Path) -> Path:
    """
    Normalize a source into an MP4 inside work_dir.

    Tries a stream-copy remux first and only falls back to a full libx264
    re-encode if that fails.

    Raises:
        TranscodeError: If both attempts fail
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    output_path = work_dir / CONVERTED_NAME

    remux_cmd = [
        FFMPEG_PATH, "-y", "-loglevel", "error",
        "-i", str(input_path),
        "-c:v", "copy",
        "-c:a", "aac", "-b:a", AUDIO_BITRATE,
        "-movflags", "+faststart",
        str(output_path),
    ]
    try:
        await run_ffmpeg(remux_cmd, REMUX_TIMEOUT, context="FFmpeg remux")
        logger.info(f"Remuxed {input_path.name} to MP4")
        return output_path
    except TranscodeError as e:
        logger.warning(f"Remux of {input_path.name} failed, re-encoding: {e}")
        output_path.unlink(missing_ok=True)

    reencode_cmd = [
        FFMPEG_PATH, "-y", "-loglevel", "error",
        "-i", str(input_path),
        "-c:v", "libx264", "-preset", "medium", "-crf", "20",
        "-c:a", "aac", "-b:a", AUDIO_BITRATE,
        "-movflags", "+faststart",
        str(output_path),
    ]
    try:
        await run_ffmpeg(reencode_cmd, REENCODE_TIMEOUT, context="FFmpeg re-encode")
    except TranscodeError as e:
        output_path.unlink(missing_ok=True)
        raise TranscodeError(f"Container conversion failed: {e}") from e

    logger.info(f"Re-encoded {input_path.name} to MP4")
    return output_path


def build_ladder_command(
    input_path: Path,
    output_dir: Path,
    segment_duration: int,
    ladder: Optional[List[dict]] = None,
) -> List[str]:
    """
    Build one ffmpeg invocation that decodes the source once, splits the video
    into one scaled branch per rung, and muxes each branch into its own HLS
    playlist + segments.
    """
    ladder = ladder or QUALITY_LADDER
    count = len(ladder)

    branches = "".join(f"[v{i}]" for i in range(1, count + 1))
    scales = ";".join(f"[v{i}]scale=-2:{q['height']}[v{i}out]" for i, q in enumerate(ladder, start=1))
    filter_complex = f"[0:v]split={count}{branches};{scales}"

    cmd = [FFMPEG_PATH, "-y", "-loglevel", "error", "-i", str(input_path), "-filter_complex", filter_complex]

    for i, quality in enumerate(ladder, start=1):
        name = quality["name"]
        cmd.extend([
            "-map", f"[v{i}out]",
            "-map", "0:a?",
            "-c:v", "libx264",
            "-b:v", quality["bitrate"],
            "-maxrate", quality["maxrate"],
            "-bufsize", quality["bufsize"],
            "-preset", "fast",
            "-g", str(HLS_GOP_SIZE),
            "-keyint_min", str(HLS_GOP_SIZE),
            "-sc_threshold", "0",
            "-c:a", "aac",
            "-b:a", AUDIO_BITRATE,
            "-f", "hls",
            "-hls_time", str(segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / f"{name}_%03d.ts"),
            str(output_dir / f"{name}.m3u8"),
        ])

    return cmd


def validate_hls_playlist(playlist_path: Path) -> Tuple[bool, Optional[str]]:
    """
    Validate an HLS playlist is complete and every segment it references exists.

    Returns:
        (is_valid, error_message); error_message is None if valid
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = playlist_path.read_text()
    except (IOError, OSError) as e:
        return False, f"Error reading playlist: {e}"

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header"

    if "#EXT-X-ENDLIST" not in content:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

    segment_count = 0
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        segment_path = playlist_path.parent / line
        if not segment_path.exists():
            return False, f"Missing segment file: {line}"
        if segment_path.stat().st_size == 0:
            return False, f"Empty segment file: {line}"
        segment_count += 1

    if segment_count == 0:
        return False, "Playlist contains no segment references"

    return True, None


def _bandwidth(bitrate: str) -> int:
    return int(bitrate.lower().rstrip("k")) * 1000


def write_master_playlist(output_dir: Path, ladder: Optional[List[dict]] = None) -> Path:
    """Write master.m3u8 referencing each rung's playlist with its bandwidth and resolution."""
    ladder = ladder or QUALITY_LADDER
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for quality in ladder:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={_bandwidth(quality['bitrate'])},"
            f"RESOLUTION={quality['width']}x{quality['height']}"
        )
        lines.append(f"{quality['name']}.m3u8")
    master_path = output_dir / MASTER_PLAYLIST_NAME
    master_path.write_text("\n".join(lines) + "\n")
    return master_path


async def encode_hls_ladder(
    input_path: Path,
    output_dir: Path,
    segment_duration: int,
    timeout: float = ENCODE_TIMEOUT,
    ladder: Optional[List[dict]] = None,
) -> Dict[str, Path]:
    """
    Encode every rung in a single ffmpeg run and validate the playlists.

    Returns:
        Mapping of quality name to its local playlist path

    Raises:
        TranscodeError: If ffmpeg fails, times out, or a playlist is incomplete
    """
    ladder = ladder or QUALITY_LADDER
    output_dir.mkdir(parents=True, exist_ok=True)
    cmd = build_ladder_command(input_path, output_dir, segment_duration, ladder)

    await run_ffmpeg(cmd, timeout, context="FFmpeg encode")

    playlists = {}
    for quality in ladder:
        playlist = output_dir / f"{quality['name']}.m3u8"
        is_valid, error = validate_hls_playlist(playlist)
        if not is_valid:
            raise TranscodeError(f"Encoded {quality['name']} playlist is invalid: {error}")
        playlists[quality["name"]] = playlist
    return playlists


async def transcode_to_hls(input_path: Path, output_dir: Path, timeout: float = ENCODE_TIMEOUT) -> HlsOutput:
    """
    Probe, pick the segment length, encode the ladder and write the master playlist.

    Raises:
        TranscodeError: If any stage fails; output_dir may hold partial files
    """
    duration = await probe_duration(input_path)
    segment_duration = choose_segment_duration(duration)
    logger.info(f"{input_path.name}: duration {duration:.1f}s, {segment_duration}s segments")

    playlists = await encode_hls_ladder(input_path, output_dir, segment_duration, timeout=timeout)
    master = write_master_playlist(output_dir)

    return HlsOutput(
        output_dir=output_dir,
        master_playlist=master,
        quality_playlists=playlists,
        segment_duration=segment_duration,
        duration=duration,
    )


def thumbnail_timestamp(duration: float) -> float:
    return round(max(0.0, duration * THUMBNAIL_OFFSET_PERCENT), 3)


async def generate_thumbnail(
    input_path: Path,
    output_path: Path,
    timestamp: float,
    timeout: float = THUMBNAIL_TIMEOUT,
) -> Path:
    """
    Extract one keyframe near timestamp as a JPEG no wider than THUMBNAIL_MAX_WIDTH.

    Raises:
        TranscodeError: If ffmpeg fails, times out, or writes no image
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    # Input seeking (-ss before -i) jumps to the nearest keyframe without decoding up to it
    cmd = [
        FFMPEG_PATH, "-y", "-loglevel", "error",
        "-ss", str(timestamp),
        "-skip_frame", "nokey",
        "-i", str(input_path),
        "-an",
        "-vframes", "1",
        "-vf", f"scale='if(gt(iw,{THUMBNAIL_MAX_WIDTH}),{THUMBNAIL_MAX_WIDTH},iw)':-2",
        "-vsync", "2",
        "-q:v", "3",
        str(output_path),
    ]

    try:
        await run_ffmpeg(cmd, timeout, context="FFmpeg thumbnail")
    except TranscodeError as e:
        raise TranscodeError(f"Thumbnail generation failed: {e}") from e

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise TranscodeError("Thumbnail generation produced no image")

    return output_path
