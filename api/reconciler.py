"""
Media edits for a property.

Object storage has no multi-object transactions, so edits are ordered to keep
the record consistent with the bucket:

Images (small, synchronous): every new file is uploaded to a fresh key first.
Only when all uploads succeeded is the record committed and are the replaced
and removed keys deleted. Any failure before the commit deletes whatever this
request uploaded and leaves the record untouched.

Video (slow, asynchronous): the existing video object set is deleted up front,
the slot is reset to `queued` and a publish job is enqueued. The property has no
playable video until that job completes.

Limit checks run before anything is uploaded or deleted.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from api.common import SavedUpload, remove_saved_uploads
from api.enums import VideoStatus
from api.property_store import PropertyStore
from api.schemas import ImageReplacement, VideoAsset
from api.storage import ObjectStore, ObjectStoreError, image_key
from api.video_pipeline import VideoPipeline
from config import (
    MAX_IMAGES_PER_PROPERTY,
    MAX_VIDEOS_PER_PROPERTY,
    SUPPORTED_IMAGE_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS,
)
from worker.publisher import PublishJob

logger = logging.getLogger(__name__)


class MediaLimitError(Exception):
    """The edit would leave the property with more media than allowed."""


class PropertyNotFoundError(Exception):
    pass


class InvalidUploadError(Exception):
    """The request references unknown media or carries an unsupported file."""


@dataclass
class MediaUpdate:
    new_images: List[SavedUpload] = field(default_factory=list)
    replace_map: List[ImageReplacement] = field(default_factory=list)
    removed_images: List[str] = field(default_factory=list)
    new_video: Optional[SavedUpload] = None
    removed_videos: List[str] = field(default_factory=list)

    def local_uploads(self) -> List[SavedUpload]:
        uploads = list(self.new_images)
        if self.new_video:
            uploads.append(self.new_video)
        return uploads


@dataclass
class MediaUpdateResult:
    property_id: str
    uploaded_images: List[str] = field(default_factory=list)
    deleted_images: List[str] = field(default_factory=list)
    video_id: Optional[int] = None
    video_status: Optional[VideoStatus] = None
    videos_removed: int = 0


@dataclass
class TeardownResult:
    property_id: str
    images_deleted: int = 0
    video_objects_deleted: int = 0


def _check_extension(upload: SavedUpload, allowed, kind: str) -> None:
    ext = Path(upload.original_name).suffix.lower()
    if ext not in allowed:
        raise InvalidUploadError(
            f"Invalid {kind} file type '{ext or upload.original_name}'. Allowed: {', '.join(sorted(allowed))}"
        )


def _match_video_slots(videos: List[VideoAsset], refs: List[str]) -> List[VideoAsset]:
    """Resolve removedVideos entries, given as slot ids or master keys."""
    matched = []
    for ref in refs:
        slot = next((v for v in videos if str(v.id) == str(ref) or (v.master_key and v.master_key == ref)), None)
        if slot is None:
            raise InvalidUploadError(f"Unknown video: {ref}")
        if slot not in matched:
            matched.append(slot)
    return matched


class MediaReconciler:
    def __init__(
        self,
        store: PropertyStore,
        object_store: ObjectStore,
        pipeline: VideoPipeline,
        max_images: int = MAX_IMAGES_PER_PROPERTY,
        max_videos: int = MAX_VIDEOS_PER_PROPERTY,
    ):
        self.store = store
        self.object_store = object_store
        self.pipeline = pipeline
        self.max_images = max_images
        self.max_videos = max_videos

    async def _require_property(self, property_id: str) -> dict:
        prop = await self.store.get_property(property_id)
        if prop is None:
            raise PropertyNotFoundError(f"Property {property_id} not found")
        return prop

    async def update_media(self, property_id: str, update: MediaUpdate) -> MediaUpdateResult:
        """
        Apply an image/video edit.

        Raises:
            PropertyNotFoundError, InvalidUploadError, MediaLimitError: before any mutation
            ObjectStoreError: if an image upload fails (after rolling back this request's uploads)
        """
        result = MediaUpdateResult(property_id=property_id)
        video_handed_off = False
        try:
            await self._require_property(property_id)
            images = await self.store.list_images(property_id)
            videos = await self.store.list_videos(property_id)

            # -- validation and limits, nothing mutated yet --
            existing_keys = {img.key for img in images}
            for upload in update.new_images:
                _check_extension(upload, SUPPORTED_IMAGE_EXTENSIONS, "image")
            if update.new_video:
                _check_extension(update.new_video, SUPPORTED_VIDEO_EXTENSIONS, "video")

            replacements: Dict[str, SavedUpload] = {}
            claimed: Set[int] = set()
            for rep in update.replace_map:
                if rep.old_key not in existing_keys:
                    raise InvalidUploadError(f"Unknown image to replace: {rep.old_key}")
                match = next(
                    (
                        i
                        for i, up in enumerate(update.new_images)
                        if i not in claimed and up.original_name == rep.new_file_name
                    ),
                    None,
                )
                if match is None:
                    raise InvalidUploadError(f"No uploaded file named {rep.new_file_name} for replacement")
                claimed.add(match)
                replacements[rep.old_key] = update.new_images[match]
            net_new = [up for i, up in enumerate(update.new_images) if i not in claimed]

            unknown = [k for k in update.removed_images if k not in existing_keys]
            if unknown:
                raise InvalidUploadError(f"Unknown image to remove: {unknown[0]}")
            keys_to_delete = list(dict.fromkeys(list(update.removed_images) + list(replacements)))

            final_images = len(images) - len(keys_to_delete) + len(update.new_images)
            if final_images > self.max_images:
                raise MediaLimitError(f"A property can have at most {self.max_images} images (would have {final_images})")

            removed_slots = _match_video_slots(videos, update.removed_videos)
            if update.new_video:
                # A new video supersedes every current slot: the whole video prefix is cleared
                removed_slots = list(videos)
            final_videos = len(videos) - len(removed_slots) + (1 if update.new_video else 0)
            if final_videos > self.max_videos:
                raise MediaLimitError(f"A property can have at most {self.max_videos} video(s)")

            # -- images: new before old --
            if replacements or net_new or keys_to_delete:
                new_entries = await self._upload_images(property_id, list(replacements.values()) + net_new)
                result.uploaded_images = [e["key"] for e in new_entries]
                try:
                    await self.store.commit_images(property_id, keys_to_delete, new_entries)
                except Exception:
                    await self._rollback(property_id, result.uploaded_images)
                    raise
                failed = await self.object_store.delete_many(keys_to_delete)
                if failed:
                    logger.warning(f"Could not delete {len(failed)} old image objects for property {property_id}")
                result.deleted_images = [k for k in keys_to_delete if k not in failed]

            # -- video: delete old set, queue new job --
            if update.new_video:
                await self._clear_video_objects(property_id)
                result.videos_removed = len(removed_slots)
                result.video_id = await self._queue_video(property_id, update.new_video)
                result.video_status = VideoStatus.QUEUED
                video_handed_off = True
            elif removed_slots:
                remaining = [v for v in videos if v not in removed_slots]
                if remaining:
                    await self._delete_slot_objects(removed_slots)
                else:
                    await self._clear_video_objects(property_id)
                result.videos_removed = await self.store.delete_videos(
                    property_id, [v.id for v in removed_slots]
                )
                await self.store.touch(property_id)
        finally:
            # The publish job owns the video file once it is queued
            leftovers = update.new_images if video_handed_off else update.local_uploads()
            remove_saved_uploads(leftovers)

        return result

    async def add_images(self, property_id: str, uploads: List[SavedUpload]) -> MediaUpdateResult:
        if not uploads:
            raise InvalidUploadError("No images provided")
        return await self.update_media(property_id, MediaUpdate(new_images=uploads))

    async def upload_video(self, property_id: str, upload: SavedUpload) -> MediaUpdateResult:
        """
        Add a video to a property without a live one. A slot that ended in
        failed/error is replaced, which is how a failed publish is retried.
        """
        video_handed_off = False
        try:
            await self._require_property(property_id)
            _check_extension(upload, SUPPORTED_VIDEO_EXTENSIONS, "video")
            videos = await self.store.list_videos(property_id)
            live = [v for v in videos if v.status in (VideoStatus.QUEUED, VideoStatus.COMPLETED)]
            if len(live) + 1 > self.max_videos:
                raise MediaLimitError(
                    f"A property can have at most {self.max_videos} video(s); remove the current one first"
                )

            await self._clear_video_objects(property_id)
            video_id = await self._queue_video(property_id, upload)
            video_handed_off = True
        finally:
            if not video_handed_off:
                remove_saved_uploads([upload])

        return MediaUpdateResult(
            property_id=property_id,
            video_id=video_id,
            video_status=VideoStatus.QUEUED,
            videos_removed=len(videos),
        )

    async def teardown_property(self, property_id: str) -> TeardownResult:
        """Permanently delete a property: its image objects, its whole video set, then the record."""
        prop = await self.store.get_property(property_id, include_deleted=True)
        if prop is None:
            raise PropertyNotFoundError(f"Property {property_id} not found")

        images = await self.store.list_images(property_id)
        result = TeardownResult(property_id=property_id)

        image_keys = [img.key for img in images]
        failed = await self.object_store.delete_many(image_keys)
        result.images_deleted = len(image_keys) - len(failed)
        result.video_objects_deleted = await self._clear_video_objects(property_id)

        await self.store.delete_property(property_id)
        logger.info(
            f"Permanently deleted property {property_id} "
            f"({result.images_deleted} images, {result.video_objects_deleted} video objects)"
        )
        return result

    async def _upload_images(self, property_id: str, uploads: List[SavedUpload]) -> List[dict]:
        entries: List[dict] = []
        try:
            for upload in uploads:
                key = image_key(property_id, upload.original_name)
                # Two files with the same name in one request must not collide
                while any(e["key"] == key for e in entries):
                    key = image_key(property_id, f"{len(entries)}-{upload.original_name}")
                await self.object_store.put(upload.path, key, upload.content_type)
                entries.append({"key": key, "original_name": upload.original_name, "content_type": upload.content_type})
        except Exception:
            await self._rollback(property_id, [e["key"] for e in entries])
            raise
        return entries

    async def _rollback(self, property_id: str, keys: List[str]) -> None:
        if not keys:
            return
        failed = await self.object_store.delete_many(keys)
        logger.warning(
            f"Rolled back {len(keys) - len(failed)}/{len(keys)} uploaded image objects for property {property_id}"
        )

    async def _clear_video_objects(self, property_id: str) -> int:
        try:
            return await self.object_store.delete_prefix(property_id)
        except ObjectStoreError as e:
            logger.warning(f"Failed to clear video objects for property {property_id}: {e}")
            return 0

    async def _delete_slot_objects(self, slots: List[VideoAsset]) -> None:
        keys = []
        for slot in slots:
            keys.extend(k for k in (slot.master_key, slot.thumbnail_key) if k)
            keys.extend((slot.quality_keys or {}).values())
        await self.object_store.delete_many(keys)

    async def _queue_video(self, property_id: str, upload: SavedUpload) -> int:
        video_id = await self.store.replace_video_slot(property_id, upload.original_name)
        self.pipeline.submit(
            video_id,
            PublishJob(
                local_source_path=upload.path,
                original_file_name=upload.original_name,
                property_id=property_id,
            ),
        )
        return video_id
