"""
Datastore access for properties and their media.

The video slot is the state shared between the HTTP tier and the publish
worker. The HTTP tier creates it as `queued`; the worker resolves it with
apply_publish_outcome, which only touches a slot that is still `queued`. A slot
that was replaced, removed or soft-deleted while its job ran is therefore never
overwritten by a stale result.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import sqlalchemy as sa
from databases import Database

from api.database import properties, property_images, property_videos
from api.db_retry import execute_with_retry
from api.enums import VideoStatus
from api.errors import ERROR_MESSAGES, truncate_error
from api.schemas import PropertyCreate, PropertyImage, VideoAsset
from config import ERROR_MESSAGE_MAX_LENGTH

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PropertyStore:
    def __init__(self, database: Database):
        self.database = database

    # ------------------------------------------------------------------
    # Property records
    # ------------------------------------------------------------------

    async def create_property(self, data: PropertyCreate) -> str:
        property_id = uuid.uuid4().hex
        now = _utcnow()
        await self.database.execute(
            properties.insert().values(
                id=property_id,
                title=data.title,
                description=data.description,
                price=data.price,
                listing_status=data.listing_status,
                is_deleted=False,
                created_at=now,
                updated_at=now,
            )
        )
        return property_id

    async def get_property(self, property_id: str, include_deleted: bool = False) -> Optional[dict]:
        query = properties.select().where(properties.c.id == property_id)
        if not include_deleted:
            query = query.where(properties.c.is_deleted.is_(False))
        row = await self.database.fetch_one(query)
        return dict(row._mapping) if row else None

    async def touch(self, property_id: str) -> None:
        await self.database.execute(
            properties.update().where(properties.c.id == property_id).values(updated_at=_utcnow())
        )

    async def soft_delete(self, property_id: str) -> bool:
        if not await self.get_property(property_id):
            return False
        await self.database.execute(
            properties.update()
            .where(properties.c.id == property_id)
            .values(is_deleted=True, updated_at=_utcnow())
        )
        return True

    async def restore(self, property_id: str) -> bool:
        if not await self.get_property(property_id, include_deleted=True):
            return False
        await self.database.execute(
            properties.update()
            .where(properties.c.id == property_id)
            .values(is_deleted=False, updated_at=_utcnow())
        )
        return True

    async def delete_property(self, property_id: str) -> None:
        """Remove the record and all child rows."""
        async with self.database.transaction():
            await self.database.execute(property_images.delete().where(property_images.c.property_id == property_id))
            await self.database.execute(property_videos.delete().where(property_videos.c.property_id == property_id))
            await self.database.execute(properties.delete().where(properties.c.id == property_id))

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def list_images(self, property_id: str) -> List[PropertyImage]:
        rows = await self.database.fetch_all(
            property_images.select()
            .where(property_images.c.property_id == property_id)
            .order_by(property_images.c.position, property_images.c.id)
        )
        return [PropertyImage(**dict(row._mapping)) for row in rows]

    async def commit_images(self, property_id: str, removed_keys: List[str], new_images: List[Dict]) -> None:
        """
        Apply one media edit to the image rows in a single transaction: drop the
        removed keys, append the new entries after the kept ones, and make the
        first remaining image the main one.

        new_images entries carry key, original_name and content_type.
        """
        async with self.database.transaction():
            if removed_keys:
                await self.database.execute(
                    property_images.delete().where(
                        sa.and_(
                            property_images.c.property_id == property_id,
                            property_images.c.key.in_(removed_keys),
                        )
                    )
                )

            kept = await self.list_images(property_id)
            position = max((img.position for img in kept), default=-1) + 1
            now = _utcnow()
            for entry in new_images:
                await self.database.execute(
                    property_images.insert().values(
                        property_id=property_id,
                        key=entry["key"],
                        original_name=entry.get("original_name"),
                        content_type=entry.get("content_type"),
                        position=position,
                        is_main=False,
                        created_at=now,
                    )
                )
                position += 1

            await self.database.execute(
                property_images.update().where(property_images.c.property_id == property_id).values(is_main=False)
            )
            first = await self.database.fetch_one(
                property_images.select()
                .where(property_images.c.property_id == property_id)
                .order_by(property_images.c.position, property_images.c.id)
                .limit(1)
            )
            if first:
                await self.database.execute(
                    property_images.update().where(property_images.c.id == first._mapping["id"]).values(is_main=True)
                )

            await self.database.execute(
                properties.update().where(properties.c.id == property_id).values(updated_at=now)
            )

    # ------------------------------------------------------------------
    # Video slots
    # ------------------------------------------------------------------

    async def list_videos(self, property_id: str) -> List[VideoAsset]:
        rows = await self.database.fetch_all(
            property_videos.select()
            .where(property_videos.c.property_id == property_id)
            .order_by(property_videos.c.id)
        )
        return [VideoAsset(**dict(row._mapping)) for row in rows]

    async def get_video(self, video_id: int) -> Optional[VideoAsset]:
        row = await self.database.fetch_one(property_videos.select().where(property_videos.c.id == video_id))
        return VideoAsset(**dict(row._mapping)) if row else None

    async def replace_video_slot(
        self,
        property_id: str,
        original_name: str,
        removed_video_ids: Optional[List[int]] = None,
    ) -> int:
        """
        Drop the given slots (all of them when removed_video_ids is None) and
        create a fresh `queued` slot, atomically.

        Returns:
            id of the new slot
        """
        now = _utcnow()
        async with self.database.transaction():
            delete = property_videos.delete().where(property_videos.c.property_id == property_id)
            if removed_video_ids is not None:
                delete = delete.where(property_videos.c.id.in_(removed_video_ids))
            if removed_video_ids is None or removed_video_ids:
                await self.database.execute(delete)

            video_id = await self.database.execute(
                property_videos.insert().values(
                    property_id=property_id,
                    status=VideoStatus.QUEUED.value,
                    original_name=original_name,
                    queued_at=now,
                )
            )
            await self.database.execute(
                properties.update().where(properties.c.id == property_id).values(updated_at=now)
            )
        return video_id

    async def delete_videos(self, property_id: str, video_ids: Optional[List[int]] = None) -> int:
        """Remove video slots of a property (all of them when video_ids is None). Returns the count."""
        query = property_videos.select().where(property_videos.c.property_id == property_id)
        if video_ids is not None:
            query = query.where(property_videos.c.id.in_(video_ids))
        rows = await self.database.fetch_all(query)
        ids = [row._mapping["id"] for row in rows]
        if ids:
            await self.database.execute(property_videos.delete().where(property_videos.c.id.in_(ids)))
        return len(ids)

    async def has_live_video(self, property_id: str) -> bool:
        """True if the property has a slot that is `queued` or `completed`."""
        row = await self.database.fetch_one(
            sa.select(property_videos.c.id)
            .where(
                sa.and_(
                    property_videos.c.property_id == property_id,
                    property_videos.c.status.in_([VideoStatus.QUEUED.value, VideoStatus.COMPLETED.value]),
                )
            )
            .limit(1)
        )
        return row is not None

    async def _resolve_queued(self, video_id: int, values: dict) -> bool:
        async with self.database.transaction():
            row = await self.database.fetch_one(
                sa.select(property_videos.c.id).where(
                    sa.and_(
                        property_videos.c.id == video_id,
                        property_videos.c.status == VideoStatus.QUEUED.value,
                    )
                )
            )
            if row is None:
                return False
            await self.database.execute(
                property_videos.update()
                .where(
                    sa.and_(
                        property_videos.c.id == video_id,
                        property_videos.c.status == VideoStatus.QUEUED.value,
                    )
                )
                .values(**values)
            )
            return True

    async def apply_publish_outcome(self, video_id: int, outcome) -> bool:
        """
        Persist a PublishOutcome onto the slot, but only if it is still `queued`.

        Retries transient database errors; this write must not be lost.

        Returns:
            True if the slot was updated, False if it was already resolved or removed
        """
        now = _utcnow()
        if outcome.success:
            values = {
                "status": VideoStatus.COMPLETED.value,
                "master_key": outcome.master_key,
                "thumbnail_key": outcome.thumbnail_key,
                "quality_keys": dict(outcome.quality_keys),
                "error_message": None,
                "finished_at": now,
            }
        else:
            values = {
                "status": outcome.status.value,
                "master_key": None,
                "thumbnail_key": None,
                "quality_keys": None,
                "error_message": truncate_error(outcome.error, ERROR_MESSAGE_MAX_LENGTH),
                "finished_at": now,
            }
        return await execute_with_retry(self._resolve_queued, video_id, values)

    async def mark_video_error(self, video_id: int, message: str) -> bool:
        """Resolve a still-queued slot to `error` (crashed job)."""
        values = {
            "status": VideoStatus.ERROR.value,
            "error_message": truncate_error(message, ERROR_MESSAGE_MAX_LENGTH),
            "finished_at": _utcnow(),
        }
        return await execute_with_retry(self._resolve_queued, video_id, values)

    async def reset_stale_queued(self, older_than_seconds: int, now: Optional[datetime] = None) -> int:
        """
        Move every slot still `queued` since before the cutoff to `error`.

        A job lives only in process memory, so a slot this old belongs to a job
        that was lost with a previous process.

        Returns:
            Number of slots reset
        """
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=older_than_seconds)
        stale_filter = sa.and_(
            property_videos.c.status == VideoStatus.QUEUED.value,
            property_videos.c.queued_at < cutoff,
        )
        rows = await self.database.fetch_all(sa.select(property_videos.c.id).where(stale_filter))
        ids = [row._mapping["id"] for row in rows]
        if not ids:
            return 0

        await self.database.execute(
            property_videos.update()
            .where(sa.and_(stale_filter, property_videos.c.id.in_(ids)))
            .values(
                status=VideoStatus.ERROR.value,
                error_message=ERROR_MESSAGES["interrupted"],
                finished_at=now,
            )
        )
        logger.warning(f"Reset {len(ids)} stale queued video slots to error: {ids}")
        return len(ids)
