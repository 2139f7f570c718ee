"""
Request plumbing shared by the HTTP handlers: upload spooling, security
headers, datetime normalization and the health check.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from databases import Database
from fastapi import HTTPException, Request, UploadFile
from starlette.middleware.base import BaseHTTPMiddleware

from api.upload_queue import UploadQueue
from config import MAX_UPLOAD_SIZE, UPLOAD_CHUNK_SIZE

logger = logging.getLogger(__name__)


@dataclass
class SavedUpload:
    """A request file spooled to local disk."""

    path: Path
    original_name: str
    content_type: Optional[str] = None
    size: int = 0


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes read back may be naive even
    though they were stored as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "SAMEORIGIN"
        return response


def _too_large(max_size: int) -> HTTPException:
    if max_size >= 1024 * 1024 * 1024:
        limit = f"{max_size / (1024 * 1024 * 1024):.0f} GB"
    else:
        limit = f"{max_size / (1024 * 1024):.0f} MB"
    return HTTPException(status_code=413, detail=f"File too large. Maximum upload size is {limit}")


def validate_content_length(request: Request, max_size: int = MAX_UPLOAD_SIZE) -> None:
    """
    Reject oversized uploads from the Content-Length header before reading the body.

    Raises:
        HTTPException: 413 if Content-Length exceeds max_size
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            too_large = int(content_length) > max_size
        except ValueError:
            return  # Invalid header, rely on streaming validation
        if too_large:
            raise _too_large(max_size)


async def save_upload_with_size_limit(
    file: UploadFile,
    upload_dir: Path,
    max_size: int = MAX_UPLOAD_SIZE,
) -> SavedUpload:
    """
    Stream an upload to a uniquely named file in upload_dir, enforcing max_size.

    Raises:
        HTTPException: 413 if the file exceeds max_size, 503 on local storage errors
    """
    original_name = Path(file.filename or "upload").name
    upload_dir.mkdir(parents=True, exist_ok=True)
    upload_path = upload_dir / f"{uuid.uuid4().hex}{Path(original_name).suffix.lower()}"

    total_size = 0
    try:
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    raise _too_large(max_size)
                f.write(chunk)
    except HTTPException:
        upload_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise HTTPException(
            status_code=503,
            detail="Upload storage temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )

    return SavedUpload(path=upload_path, original_name=original_name, content_type=file.content_type, size=total_size)


def remove_saved_uploads(uploads: List[SavedUpload]) -> None:
    for upload in uploads:
        try:
            upload.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove local upload {upload.path}: {e}")


async def check_health(database: Database, upload_queue: UploadQueue) -> dict:
    """
    Check database connectivity and report upload queue load.

    Returns a dict with checks, queue stats, healthy and status_code.
    """
    checks = {"database": False}

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "queue": {
            "concurrency": upload_queue.concurrency,
            "running": upload_queue.running,
            "pending": upload_queue.pending,
        },
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
