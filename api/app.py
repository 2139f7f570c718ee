"""
HTTP surface: the property record lifecycle the video pipeline hangs off, the
media upload/edit endpoints, status polling and a media proxy.

create_app() is the composition root. It builds (or accepts) the database,
object store, upload queue, publisher, pipeline and reconciler and keeps them
on app.state; handlers reach them through the request.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from databases import Database
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from api.common import (
    SavedUpload,
    SecurityHeadersMiddleware,
    check_health,
    remove_saved_uploads,
    save_upload_with_size_limit,
    validate_content_length,
)
from api.database import configure_database, create_database, create_tables
from api.db_retry import DatabaseRetryableError
from api.enums import VideoStatus
from api.property_store import PropertyStore
from api.reconciler import (
    InvalidUploadError,
    MediaLimitError,
    MediaReconciler,
    MediaUpdate,
    PropertyNotFoundError,
)
from api.schemas import (
    ImageResponse,
    MediaUpdateResponse,
    PropertyCreate,
    PropertyResponse,
    TeardownResponse,
    VideoAcceptedResponse,
    VideoAsset,
    VideoResponse,
    VideoStatusResponse,
    parse_key_list,
    parse_replace_map,
)
from api.storage import ObjectNotFoundError, ObjectStore, ObjectStoreError, create_object_store
from api.upload_queue import UploadQueue
from api.video_pipeline import VideoPipeline
from config import (
    CORS_ALLOWED_ORIGINS,
    LOG_LEVEL,
    PORT,
    QUEUE_SHUTDOWN_TIMEOUT,
    RESET_STALE_ON_STARTUP,
    SCRATCH_DIR,
    STALE_QUEUED_AFTER,
    UPLOADS_DIR,
    VIDEO_UPLOAD_CONCURRENCY,
)
from worker.publisher import VideoPublisher

logger = logging.getLogger(__name__)

MEDIA_PROXY_PREFIX = "/api/media"


def rewrite_playlist(content: str, key: str, proxy_prefix: str = MEDIA_PROXY_PREFIX) -> str:
    """
    Point every segment and sub-playlist URI of an HLS playlist at the media proxy.

    Relative URIs resolve against the playlist's own directory in the bucket.
    """
    directory = key.rsplit("/", 1)[0] if "/" in key else ""
    lines = []
    for line in content.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and stripped.endswith((".ts", ".m3u8")):
            if "://" not in stripped and not stripped.startswith("/"):
                stripped = f"{proxy_prefix}/{directory}/{stripped}" if directory else f"{proxy_prefix}/{stripped}"
            lines.append(stripped)
        else:
            lines.append(line)
    return "\n".join(lines) + "\n"


async def _video_response(video: VideoAsset, object_store: ObjectStore) -> VideoResponse:
    response = VideoResponse(**video.model_dump(exclude={"property_id"}))
    if video.is_published:
        response.stream_url = f"{MEDIA_PROXY_PREFIX}/{video.master_key}"
        response.thumbnail_url = await object_store.signed_read_url(video.thumbnail_key)
    return response


def create_app(
    database: Optional[Database] = None,
    object_store: Optional[ObjectStore] = None,
    upload_queue: Optional[UploadQueue] = None,
    scratch_dir: Path = SCRATCH_DIR,
    uploads_dir: Path = UPLOADS_DIR,
    reset_stale_on_startup: bool = RESET_STALE_ON_STARTUP,
    manage_schema: bool = True,
) -> FastAPI:
    database = database if database is not None else create_database()
    object_store = object_store if object_store is not None else create_object_store()
    upload_queue = upload_queue if upload_queue is not None else UploadQueue(VIDEO_UPLOAD_CONCURRENCY)

    store = PropertyStore(database)
    publisher = VideoPublisher(object_store, scratch_dir)
    pipeline = VideoPipeline(store, publisher, upload_queue)
    reconciler = MediaReconciler(store, object_store, pipeline)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if manage_schema:
            await asyncio.to_thread(create_tables, str(database.url))
        await database.connect()
        await configure_database(database)
        if reset_stale_on_startup:
            reset = await store.reset_stale_queued(STALE_QUEUED_AFTER)
            if reset:
                logger.warning(f"Marked {reset} interrupted video uploads as error")
        object_store.start_cache_sweeper()
        yield
        await upload_queue.shutdown(timeout=QUEUE_SHUTDOWN_TIMEOUT)
        await object_store.stop_cache_sweeper()
        await database.disconnect()

    app = FastAPI(title="propstream", description="Property media backend", lifespan=lifespan)
    app.state.database = database
    app.state.object_store = object_store
    app.state.upload_queue = upload_queue
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.reconciler = reconciler

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials="*" not in CORS_ALLOWED_ORIGINS,
        allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "Range"],
        expose_headers=["Content-Length", "Content-Range"],
    )

    @app.exception_handler(MediaLimitError)
    async def media_limit_handler(request: Request, exc: MediaLimitError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PropertyNotFoundError)
    async def property_not_found_handler(request: Request, exc: PropertyNotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Property not found"})

    @app.exception_handler(InvalidUploadError)
    async def invalid_upload_handler(request: Request, exc: InvalidUploadError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ObjectNotFoundError)
    async def object_not_found_handler(request: Request, exc: ObjectNotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Media not found"})

    @app.exception_handler(ObjectStoreError)
    async def object_store_handler(request: Request, exc: ObjectStoreError):
        logger.error(f"Object store error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=502, content={"detail": "Media storage unavailable, please retry"})

    @app.exception_handler(DatabaseRetryableError)
    async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
        logger.warning(f"Database busy: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable, please retry"},
            headers={"Retry-After": "1"},
        )

    def _store(request: Request) -> PropertyStore:
        return request.app.state.store

    def _reconciler(request: Request) -> MediaReconciler:
        return request.app.state.reconciler

    async def _spool(files: Optional[List[UploadFile]]) -> List[SavedUpload]:
        saved: List[SavedUpload] = []
        try:
            for upload in files or []:
                if upload is None or not upload.filename:
                    continue
                saved.append(await save_upload_with_size_limit(upload, uploads_dir))
        except Exception:
            remove_saved_uploads(saved)
            raise
        return saved

    @app.get("/health")
    async def health(request: Request):
        result = await check_health(request.app.state.database, request.app.state.upload_queue)
        return JSONResponse(
            status_code=result["status_code"],
            content={"healthy": result["healthy"], "checks": result["checks"], "queue": result["queue"]},
        )

    @app.post("/api/properties", status_code=201, response_model=PropertyResponse)
    async def create_property(request: Request, data: PropertyCreate):
        store = _store(request)
        property_id = await store.create_property(data)
        return PropertyResponse(**await store.get_property(property_id))

    @app.get("/api/properties/{property_id}", response_model=PropertyResponse)
    async def get_property(request: Request, property_id: str):
        store = _store(request)
        record = await store.get_property(property_id)
        if record is None:
            raise PropertyNotFoundError(property_id)
        object_store = request.app.state.object_store
        images = [
            ImageResponse(
                key=img.key,
                original_name=img.original_name,
                is_main=img.is_main,
                url=await object_store.signed_read_url(img.key),
            )
            for img in await store.list_images(property_id)
        ]
        videos = [await _video_response(v, object_store) for v in await store.list_videos(property_id)]
        return PropertyResponse(**record, images=images, videos=videos)

    @app.post("/api/properties/{property_id}/images", response_model=MediaUpdateResponse)
    async def upload_images(request: Request, property_id: str, images: List[UploadFile] = File(...)):
        validate_content_length(request)
        saved = await _spool(images)
        result = await _reconciler(request).add_images(property_id, saved)
        return MediaUpdateResponse(**vars(result))

    @app.post("/api/properties/{property_id}/video", status_code=202, response_model=VideoAcceptedResponse)
    async def upload_video(request: Request, property_id: str, video: UploadFile = File(...)):
        validate_content_length(request)
        saved = await _spool([video])
        if not saved:
            raise InvalidUploadError("No video file provided")
        result = await _reconciler(request).upload_video(property_id, saved[0])
        return VideoAcceptedResponse(property_id=property_id, video_id=result.video_id)

    @app.put("/api/properties/{property_id}/media")
    async def update_media(
        request: Request,
        property_id: str,
        images: Optional[List[UploadFile]] = File(None),
        replaceMapFiles: Optional[List[UploadFile]] = File(None),  # noqa: N803 - form field name
        video: Optional[UploadFile] = File(None),
        replaceMap: Optional[str] = Form(None),  # noqa: N803
        removedImages: Optional[str] = Form(None),  # noqa: N803
        removedVideos: Optional[str] = Form(None),  # noqa: N803
    ):
        validate_content_length(request)
        try:
            replace_map = parse_replace_map(replaceMap)
            removed_images = parse_key_list(removedImages, "removedImages")
            removed_videos = parse_key_list(removedVideos, "removedVideos")
        except ValueError as e:
            raise InvalidUploadError(str(e)) from e

        new_images = await _spool(list(images or []) + list(replaceMapFiles or []))
        try:
            new_videos = await _spool([video] if video else [])
        except Exception:
            remove_saved_uploads(new_images)
            raise

        update = MediaUpdate(
            new_images=new_images,
            replace_map=replace_map,
            removed_images=removed_images,
            new_video=new_videos[0] if new_videos else None,
            removed_videos=removed_videos,
        )
        result = await _reconciler(request).update_media(property_id, update)
        body = MediaUpdateResponse(**vars(result))
        status_code = 202 if result.video_status == VideoStatus.QUEUED else 200
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.get("/api/properties/{property_id}/video/status", response_model=VideoStatusResponse)
    async def video_status(request: Request, property_id: str):
        store = _store(request)
        if await store.get_property(property_id) is None:
            raise PropertyNotFoundError(property_id)
        videos = await store.list_videos(property_id)
        if not videos:
            return VideoStatusResponse(property_id=property_id)
        video = await _video_response(videos[-1], request.app.state.object_store)
        return VideoStatusResponse(property_id=property_id, video=video)

    @app.delete("/api/properties/{property_id}")
    async def delete_property(request: Request, property_id: str):
        if not await _store(request).soft_delete(property_id):
            raise PropertyNotFoundError(property_id)
        return {"property_id": property_id, "status": "deleted"}

    @app.put("/api/properties/{property_id}/restore")
    async def restore_property(request: Request, property_id: str):
        if not await _store(request).restore(property_id):
            raise PropertyNotFoundError(property_id)
        return {"property_id": property_id, "status": "restored"}

    @app.delete("/api/properties/{property_id}/permanent", response_model=TeardownResponse)
    async def delete_property_permanently(request: Request, property_id: str):
        result = await _reconciler(request).teardown_property(property_id)
        return TeardownResponse(**vars(result))

    @app.get(MEDIA_PROXY_PREFIX + "/{key:path}")
    async def media_proxy(request: Request, key: str):
        """Serve a stored object; playlists are rewritten so every URI goes back through this proxy."""
        if not key.startswith("properties/") or ".." in key.split("/"):
            raise HTTPException(status_code=404, detail="Media not found")
        object_store: ObjectStore = request.app.state.object_store

        if key.endswith(".m3u8"):
            content = (await object_store.get_object(key)).decode("utf-8", errors="replace")
            return Response(
                content=rewrite_playlist(content, key),
                media_type="application/x-mpegURL",
                headers={"Cache-Control": "no-cache"},
            )

        stream = await object_store.open_object(key)
        headers = {"Cache-Control": "public, max-age=31536000, immutable"}
        if stream.content_length is not None:
            headers["Content-Length"] = str(stream.content_length)
        return StreamingResponse(stream.iter_chunks(), media_type=stream.content_type, headers=headers)

    return app


def main():
    import uvicorn

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
