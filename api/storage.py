"""
S3-compatible object storage for property media.

Key layout (everything for a property lives under one prefix so a teardown can
be done by listing):

    properties/{id}/images/{timestamp}-{name}
    properties/{id}/videos/master.m3u8
    properties/{id}/videos/{quality}.m3u8
    properties/{id}/videos/{quality}_{seq}.ts
    properties/{id}/videos/thumbnails/{name}.jpg

boto3 is synchronous, so every client call is pushed to a worker thread with
asyncio.to_thread. The client performs no retries of its own beyond botocore's
defaults; callers decide whether a failure aborts their operation.
"""

import asyncio
import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from api.enums import MediaKind
from config import (
    PRESIGN_TTL,
    S3_ACCESS_KEY_ID,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_REGION,
    S3_SECRET_ACCESS_KEY,
    UPLOAD_CHUNK_SIZE,
    URL_CACHE_MAX_AGE,
    URL_CACHE_SAFETY_FACTOR,
    URL_CACHE_SWEEP_INTERVAL,
)

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")

# Characters that break presigned URLs or proxy paths when left in a key
_UNSAFE_KEY_CHARS = re.compile(r"[&<>\"'`\\?%{}|^~\[\] ]")

CONTENT_TYPES = {
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".mp4": "video/mp4",
}


class ObjectStoreError(Exception):
    """A storage operation failed (network, auth, or a bucket-level error)."""


class ObjectNotFoundError(ObjectStoreError):
    """The requested key does not exist."""


def sanitize_key(key: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", key)


def property_prefix(property_id: str) -> str:
    return f"properties/{property_id}/"


def media_prefix(property_id: str, kind: MediaKind) -> str:
    return f"{property_prefix(property_id)}{kind.value}/"


def video_prefix(property_id: str) -> str:
    return media_prefix(property_id, MediaKind.VIDEOS)


def video_key(property_id: str, filename: str) -> str:
    return sanitize_key(f"{video_prefix(property_id)}{filename}")


def video_thumbnail_key(property_id: str, filename: str) -> str:
    return sanitize_key(f"{video_prefix(property_id)}thumbnails/{filename}")


def image_key(property_id: str, original_name: str, timestamp_ms: Optional[int] = None) -> str:
    """Images get a millisecond timestamp prefix so a replacement never reuses the old key."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    name = Path(original_name).name or "image"
    return sanitize_key(f"{media_prefix(property_id, MediaKind.IMAGES)}{timestamp_ms}-{name}")


def content_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


class SignedUrlCache:
    """
    Per-key memo of presigned read URLs.

    An entry expires at now + min(ttl * safety_factor, max_age), so a cached URL
    is never handed out close to (or past) the moment the signature lapses.
    Entries are independent; concurrent set/get on different keys needs no
    coordination and a miss is always safe to recompute.
    """

    def __init__(self, max_age: float = URL_CACHE_MAX_AGE, safety_factor: float = URL_CACHE_SAFETY_FACTOR):
        self.max_age = max_age
        self.safety_factor = safety_factor
        self._entries: Dict[str, Tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str, now: Optional[float] = None) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        url, expires_at = entry
        if (now if now is not None else time.time()) >= expires_at:
            self._entries.pop(key, None)
            return None
        return url

    def set(self, key: str, url: str, ttl: float, now: Optional[float] = None) -> None:
        now = now if now is not None else time.time()
        self._entries[key] = (url, now + min(ttl * self.safety_factor, self.max_age))

    def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def evict_prefix(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = now if now is not None else time.time()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)


@dataclass
class ObjectStream:
    """An open object body, read in chunks off the event loop."""

    key: str
    content_type: str
    content_length: Optional[int]
    body: Any
    chunk_size: int = UPLOAD_CHUNK_SIZE

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(self.body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.body.close()


def _error_code(error: ClientError) -> str:
    return str((error.response.get("Error") or {}).get("Code", ""))


class ObjectStore:
    """Async facade over one bucket of an S3-compatible store."""

    def __init__(
        self,
        client,
        bucket: str,
        url_cache: Optional[SignedUrlCache] = None,
        presign_ttl: int = PRESIGN_TTL,
    ):
        self._client = client
        self.bucket = bucket
        self.url_cache = url_cache if url_cache is not None else SignedUrlCache()
        self.presign_ttl = presign_ttl
        self._sweeper: Optional[asyncio.Task] = None

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"Object store {operation} failed: not found") from e
            raise ObjectStoreError(f"Object store {operation} failed: {e}") from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Object store {operation} failed: {e}") from e

    async def put(self, source: Union[Path, str, bytes], key: str, content_type: Optional[str] = None) -> str:
        """
        Upload a local file or an in-memory buffer to key, replacing any existing object.

        Raises:
            FileNotFoundError: If source is a path that no longer exists
            ObjectStoreError: If the upload fails
        """
        content_type = content_type or content_type_for(key)
        extra_args = {"ContentType": content_type}

        if isinstance(source, (bytes, bytearray)):
            await self._call(
                "put",
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=bytes(source),
                ContentType=content_type,
            )
        else:
            path = Path(source)

            def _upload():
                with open(path, "rb") as fh:
                    self._client.upload_fileobj(fh, self.bucket, key, ExtraArgs=extra_args)

            await self._call("put", _upload)

        self.url_cache.evict(key)
        return key

    async def delete(self, key: str) -> None:
        """Delete key. Deleting a key that does not exist is not an error."""
        try:
            await self._call("delete", self._client.delete_object, Bucket=self.bucket, Key=key)
        except ObjectNotFoundError:
            pass
        self.url_cache.evict(key)

    async def delete_many(self, keys: Iterable[str]) -> List[str]:
        """
        Best-effort delete of each key. Failures are logged and skipped.

        Returns:
            The keys that could not be deleted
        """
        failed = []
        for key in keys:
            try:
                await self.delete(key)
            except ObjectStoreError as e:
                logger.warning(f"Failed to delete {key}: {e}")
                failed.append(key)
        return failed

    async def list_keys(self, prefix: str) -> List[str]:
        """List every key under prefix, following continuation tokens."""
        keys: List[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            resp = await self._call("list", self._client.list_objects_v2, **params)
            keys.extend(obj["Key"] for obj in resp.get("Contents", []) or [])
            if not resp.get("IsTruncated"):
                break
            continuation_token = resp.get("NextContinuationToken")
            if not continuation_token:
                break
        return keys

    async def delete_prefix(self, property_id: str, kind: MediaKind = MediaKind.VIDEOS) -> int:
        """
        Delete every object in one media namespace of a property (the whole video
        set by default: manifests, segments and thumbnails).

        Returns:
            Number of objects deleted
        """
        prefix = media_prefix(property_id, kind)
        keys = await self.list_keys(prefix)
        deleted = 0
        errors = []

        for i in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[i : i + DELETE_BATCH_SIZE]
            resp = await self._call(
                "delete",
                self._client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            batch_errors = resp.get("Errors", []) if resp else []
            failed_keys = {err.get("Key") for err in batch_errors}
            for k in batch:
                if k not in failed_keys:
                    self.url_cache.evict(k)
                    deleted += 1
            errors.extend(batch_errors)

        self.url_cache.evict_prefix(prefix)

        if errors:
            sample = ", ".join(f"{e.get('Key')}: {e.get('Code')}" for e in errors[:5])
            raise ObjectStoreError(f"Object store delete failed for {len(errors)} objects under {prefix} ({sample})")

        logger.info(f"Deleted {deleted} objects under {prefix}")
        return deleted

    async def signed_read_url(self, key: str, ttl: Optional[int] = None) -> str:
        ttl = ttl or self.presign_ttl
        cached = self.url_cache.get(key)
        if cached:
            return cached
        url = await self._call(
            "presign",
            self._client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl,
        )
        self.url_cache.set(key, url, ttl)
        return url

    async def open_object(self, key: str) -> ObjectStream:
        """
        Open key for streaming.

        Raises:
            ObjectNotFoundError: If key does not exist
        """
        resp = await self._call("get", self._client.get_object, Bucket=self.bucket, Key=key)
        return ObjectStream(
            key=key,
            content_type=resp.get("ContentType") or content_type_for(key),
            content_length=resp.get("ContentLength"),
            body=resp["Body"],
        )

    async def get_object(self, key: str) -> bytes:
        """Read a whole (small) object into memory, e.g. a playlist."""
        stream = await self.open_object(key)
        chunks = [chunk async for chunk in stream.iter_chunks()]
        return b"".join(chunks)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.url_cache.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired signed URLs")

    def start_cache_sweeper(self, interval: float = URL_CACHE_SWEEP_INTERVAL) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        return self._sweeper

    async def stop_cache_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


def create_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=S3_ENDPOINT_URL or None,
        aws_access_key_id=S3_ACCESS_KEY_ID or None,
        aws_secret_access_key=S3_SECRET_ACCESS_KEY or None,
        region_name=S3_REGION,
        config=BotoConfig(signature_version="s3v4"),
    )


def create_object_store(client=None, bucket: str = S3_BUCKET) -> ObjectStore:
    return ObjectStore(client if client is not None else create_s3_client(), bucket)
