"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Lifecycle of a property's video slot.

    The HTTP tier writes QUEUED; the publish worker resolves it exactly once to
    COMPLETED, FAILED (the job reported a failure) or ERROR (the job crashed or
    was interrupted). PROCESSING is implicit and never persisted.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.ERROR)


class MediaKind(str, Enum):
    """Object-store namespace under a property."""

    IMAGES = "images"
    VIDEOS = "videos"


class PublishStep(str, Enum):
    """Step names of a publish job, used in logs and failure messages."""

    VALIDATE = "validate"
    CONVERT = "convert"
    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"
    UPLOAD = "upload"
    UPLOAD_THUMBNAIL = "upload_thumbnail"
