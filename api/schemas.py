import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from api.enums import VideoStatus


def parse_json_field(value: Any, field_name: str, default: Any = None) -> Any:
    """
    Normalize a multipart form field that may arrive either as a JSON string or
    as an already-decoded value.

    Raises:
        ValueError: If a string value is not valid JSON
    """
    if value is None:
        return default
    if isinstance(value, str):
        if not value.strip():
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"{field_name} must be valid JSON") from e
    return value


class ImageReplacement(BaseModel):
    """Replace the stored image at old_key with the uploaded file named new_file_name."""

    old_key: str = Field(..., min_length=1, max_length=512)
    new_file_name: str = Field(..., min_length=1, max_length=255)


def parse_replace_map(value: Any) -> List[ImageReplacement]:
    """
    Parse the replaceMap form field.

    Accepts {"<oldKey>": "<newFileName>", ...} or a list of
    {"oldKey": ..., "newFileName": ...} objects (snake_case also accepted).
    """
    data = parse_json_field(value, "replaceMap", default={})
    if isinstance(data, dict):
        return [ImageReplacement(old_key=k, new_file_name=v) for k, v in data.items()]
    if isinstance(data, list):
        pairs = []
        for item in data:
            if not isinstance(item, dict):
                raise ValueError("replaceMap entries must be objects")
            pairs.append(
                ImageReplacement(
                    old_key=item.get("oldKey", item.get("old_key", "")),
                    new_file_name=item.get("newFileName", item.get("new_file_name", "")),
                )
            )
        return pairs
    raise ValueError("replaceMap must be an object or a list")


def parse_key_list(value: Any, field_name: str) -> List[str]:
    """Parse a list-of-keys form field (removedImages, removedVideos)."""
    data = parse_json_field(value, field_name, default=[])
    if isinstance(data, str):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(k, str) for k in data):
        raise ValueError(f"{field_name} must be a list of strings")
    return [k for k in data if k]


class VideoAsset(BaseModel):
    """The persisted video slot of a property."""

    id: int
    property_id: str
    status: VideoStatus
    original_name: Optional[str] = None
    master_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    quality_keys: Optional[Dict[str, str]] = None
    error_message: Optional[str] = None
    queued_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @field_validator("quality_keys", mode="before")
    @classmethod
    def decode_quality_keys(cls, v):
        # JSON columns come back as text from some drivers
        if isinstance(v, str):
            return json.loads(v) if v else None
        return v

    @property
    def is_published(self) -> bool:
        return (
            self.status == VideoStatus.COMPLETED
            and bool(self.master_key)
            and bool(self.thumbnail_key)
            and bool(self.quality_keys)
        )


class PropertyImage(BaseModel):
    id: int
    property_id: str
    key: str
    original_name: Optional[str] = None
    content_type: Optional[str] = None
    position: int = 0
    is_main: bool = False


class PropertyCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    listing_status: Optional[str] = Field(None, max_length=30)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v


class ImageResponse(BaseModel):
    key: str
    original_name: Optional[str] = None
    is_main: bool = False
    url: Optional[str] = None


class VideoResponse(BaseModel):
    id: int
    status: VideoStatus
    original_name: Optional[str] = None
    master_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    quality_keys: Optional[Dict[str, str]] = None
    error_message: Optional[str] = None
    stream_url: Optional[str] = None  # proxied master playlist
    thumbnail_url: Optional[str] = None  # signed URL
    queued_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class PropertyResponse(BaseModel):
    id: str
    title: str
    description: str = ""
    price: Optional[float] = None
    listing_status: Optional[str] = None
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    images: List[ImageResponse] = []
    videos: List[VideoResponse] = []

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""


class VideoStatusResponse(BaseModel):
    property_id: str
    video: Optional[VideoResponse] = None


class VideoAcceptedResponse(BaseModel):
    property_id: str
    video_id: int
    status: VideoStatus = VideoStatus.QUEUED
    message: str = "Video accepted for processing"


class MediaUpdateResponse(BaseModel):
    property_id: str
    uploaded_images: List[str] = []
    deleted_images: List[str] = []
    video_id: Optional[int] = None
    video_status: Optional[VideoStatus] = None
    videos_removed: int = 0


class TeardownResponse(BaseModel):
    property_id: str
    images_deleted: int
    video_objects_deleted: int
