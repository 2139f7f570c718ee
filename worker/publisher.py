"""
Video publish worker: turns one uploaded file into a published HLS asset set.

A job runs these steps strictly in order, each gated on the previous one:

    validate -> convert -> transcode -> thumbnail -> upload -> upload_thumbnail

The heavy work happens in ffmpeg child processes (see worker.transcoder). The
worker never raises for a job-level failure. It returns a PublishOutcome, which
the caller turns into the terminal write on the property's video slot.

Guarantees, whatever happens:
- on failure every key uploaded by this job is deleted again (best effort)
- the job's scratch directory and the uploaded source file are removed
"""

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from api.enums import PublishStep, VideoStatus
from api.storage import ObjectStore, ObjectStoreError, content_type_for, video_key, video_thumbnail_key
from config import QUALITY_NAMES, SCRATCH_DIR
from worker import transcoder
from worker.transcoder import TranscodeError

logger = logging.getLogger(__name__)


class SourceMissingError(Exception):
    """The local upload handed to the job does not exist."""


@dataclass(frozen=True)
class PublishJob:
    local_source_path: Path
    original_file_name: str
    property_id: str


@dataclass
class PublishOutcome:
    """Completion message of one publish job."""

    success: bool
    status: VideoStatus
    master_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    quality_keys: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    failed_step: Optional[PublishStep] = None
    uploaded_keys: List[str] = field(default_factory=list)

    @classmethod
    def completed(cls, master_key: str, thumbnail_key: str, quality_keys: Dict[str, str], uploaded_keys: List[str]):
        return cls(
            success=True,
            status=VideoStatus.COMPLETED,
            master_key=master_key,
            thumbnail_key=thumbnail_key,
            quality_keys=dict(quality_keys),
            uploaded_keys=list(uploaded_keys),
        )

    @classmethod
    def failed(cls, error: str, step: Optional[PublishStep] = None, crashed: bool = False, uploaded_keys=None):
        return cls(
            success=False,
            status=VideoStatus.ERROR if crashed else VideoStatus.FAILED,
            error=error,
            failed_step=step,
            uploaded_keys=list(uploaded_keys or []),
        )

    def to_message(self) -> dict:
        if self.success:
            return {
                "success": True,
                "masterKey": self.master_key,
                "thumbnailKey": self.thumbnail_key,
                "qualityKeys": dict(self.quality_keys),
            }
        return {"success": False, "error": self.error}


def remove_local_paths(paths: List[Path]) -> None:
    """Delete files and directory trees, logging (never raising) on failure."""
    for path in paths:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clean up {path}: {e}")


class VideoPublisher:
    def __init__(self, object_store: ObjectStore, scratch_root: Path = SCRATCH_DIR):
        self.object_store = object_store
        self.scratch_root = Path(scratch_root)

    async def run(self, job: PublishJob) -> PublishOutcome:
        """Execute one job end to end. Never raises for job-level failures."""
        pid = job.property_id
        work_dir = self.scratch_root / f"job-{pid}-{uuid.uuid4().hex[:12]}"
        uploaded: List[str] = []
        step = PublishStep.VALIDATE
        upload_completed = False
        outcome: Optional[PublishOutcome] = None

        logger.info(f"Publishing video {job.original_file_name} for property {pid}")

        try:
            if not job.local_source_path.is_file():
                raise SourceMissingError(f"Source file not found: {job.original_file_name}")
            work_dir.mkdir(parents=True, exist_ok=True)

            step = PublishStep.CONVERT
            source = job.local_source_path
            if transcoder.needs_conversion(job.original_file_name):
                source = await transcoder.convert_to_mp4(source, work_dir)

            step = PublishStep.TRANSCODE
            hls = await transcoder.transcode_to_hls(source, work_dir / "hls")

            step = PublishStep.THUMBNAIL
            thumb_name = f"{Path(job.original_file_name).stem or 'video'}-{uuid.uuid4().hex[:8]}.jpg"
            thumbnail = await transcoder.generate_thumbnail(
                source,
                work_dir / "thumbnails" / thumb_name,
                transcoder.thumbnail_timestamp(hls.duration),
            )

            step = PublishStep.UPLOAD
            uploaded_names = set()
            for path in hls.files():
                key = video_key(pid, path.name)
                try:
                    await self.object_store.put(path, key, content_type_for(path.name))
                except FileNotFoundError:
                    logger.warning(f"Skipping {path.name}: file vanished before upload")
                    continue
                uploaded.append(key)
                uploaded_names.add(path.name)

            required = [hls.master_playlist.name] + [p.name for p in hls.quality_playlists.values()]
            missing = [name for name in required if name not in uploaded_names]
            if missing:
                raise ObjectStoreError(f"Required playlists were not uploaded: {', '.join(missing)}")

            step = PublishStep.UPLOAD_THUMBNAIL
            thumbnail_key = video_thumbnail_key(pid, thumbnail.name)
            await self.object_store.put(thumbnail, thumbnail_key, "image/jpeg")
            uploaded.append(thumbnail_key)

            upload_completed = True
            quality_keys = {
                name: video_key(pid, hls.quality_playlists[name].name)
                for name in QUALITY_NAMES
                if name in hls.quality_playlists
            }
            outcome = PublishOutcome.completed(
                master_key=video_key(pid, hls.master_playlist.name),
                thumbnail_key=thumbnail_key,
                quality_keys=quality_keys,
                uploaded_keys=uploaded,
            )
            logger.info(f"Published video for property {pid} ({len(uploaded)} objects)")

        except (SourceMissingError, TranscodeError, ObjectStoreError, OSError) as e:
            logger.error(f"Publish failed for property {pid} at step {step.value}: {e}")
            outcome = PublishOutcome.failed(str(e), step=step)
        except Exception as e:
            logger.exception(f"Publish crashed for property {pid} at step {step.value}")
            outcome = PublishOutcome.failed(f"Unexpected error during {step.value}: {e}", step=step, crashed=True)
        finally:
            if not upload_completed and uploaded:
                failed = await self.object_store.delete_many(uploaded)
                if failed:
                    logger.warning(f"Rollback left {len(failed)} objects for property {pid}: {failed}")
                else:
                    logger.info(f"Rolled back {len(uploaded)} uploaded objects for property {pid}")
            remove_local_paths([work_dir, job.local_source_path])

        outcome.uploaded_keys = list(uploaded)
        return outcome
