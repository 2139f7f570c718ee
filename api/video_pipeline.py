"""
Glue between the HTTP tier and the publish worker.

enqueue_video_upload is the single entry point route handlers use. A submitted
job runs the VideoPublisher and then writes its PublishOutcome onto the video
slot it was created for. If the job body itself blows up or is cancelled, the
slot is moved to `error` before the exception surfaces through the task handle,
so a crash is never silently dropped. A result that arrives for a slot that was
removed meanwhile is discarded along with the objects only it references.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable

from api.errors import ERROR_MESSAGES, sanitize_error_message
from api.property_store import PropertyStore
from api.upload_queue import UploadQueue
from worker.publisher import PublishJob, PublishOutcome, VideoPublisher

logger = logging.getLogger(__name__)


class VideoPipeline:
    def __init__(self, store: PropertyStore, publisher: VideoPublisher, queue: UploadQueue):
        self.store = store
        self.publisher = publisher
        self.queue = queue

    def enqueue_video_upload(self, job_fn: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        return self.queue.enqueue(job_fn)

    def submit(self, video_id: int, job: PublishJob) -> asyncio.Task:
        """Queue a publish job for an already-`queued` slot."""

        async def run_job():
            return await self.publish_and_record(video_id, job)

        logger.info(f"Queued video {job.original_file_name} for property {job.property_id} (slot {video_id})")
        return self.enqueue_video_upload(run_job)

    async def publish_and_record(self, video_id: int, job: PublishJob) -> PublishOutcome:
        context = f"property_id={job.property_id}, video_id={video_id}"
        try:
            outcome = await self.publisher.run(job)
        except asyncio.CancelledError:
            logger.warning(f"Publish job cancelled ({context})")
            await asyncio.shield(self.store.mark_video_error(video_id, ERROR_MESSAGES["interrupted"]))
            raise
        except Exception:
            logger.exception(f"Publish job crashed ({context})")
            await self.store.mark_video_error(video_id, ERROR_MESSAGES["general"])
            raise

        if not outcome.success:
            outcome = dataclasses.replace(outcome, error=sanitize_error_message(outcome.error, context=context))

        applied = await self.store.apply_publish_outcome(video_id, outcome)
        if applied:
            logger.info(f"Video slot resolved to {outcome.status.value} ({context})")
            return outcome

        logger.warning(f"Video slot no longer queued, outcome {outcome.status.value} discarded ({context})")
        if outcome.success:
            await self._discard_uploaded(job.property_id, outcome, context)
        return outcome

    async def _discard_uploaded(self, property_id: str, outcome: PublishOutcome, context: str) -> None:
        # Playlist and segment names are shared by every video of a property, so
        # while another slot is live only this job's thumbnail is ours to remove.
        if await self.store.has_live_video(property_id):
            keys = [outcome.thumbnail_key] if outcome.thumbnail_key else []
        else:
            keys = outcome.uploaded_keys
        if not keys:
            return
        failed = await self.publisher.object_store.delete_many(keys)
        if failed:
            logger.warning(f"Could not remove {len(failed)} objects of a discarded job ({context}): {failed}")
        else:
            logger.info(f"Removed {len(keys)} objects of a discarded job ({context})")
