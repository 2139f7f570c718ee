from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


properties = sa.Table(
    "properties",
    metadata,
    sa.Column("id", sa.String(32), primary_key=True),  # uuid4 hex, used in object-store keys
    sa.Column("title", sa.String(100), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("price", sa.Float, nullable=True),
    sa.Column("listing_status", sa.String(30), nullable=True),  # For Sale, For Rent, ...
    sa.Column("is_deleted", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_properties_is_deleted", "is_deleted"),
)

# Images are uploaded synchronously; a row exists only once its object is stored
property_images = sa.Table(
    "property_images",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("property_id", sa.String(32), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False),
    sa.Column("key", sa.String(512), unique=True, nullable=False),
    sa.Column("original_name", sa.String(255), nullable=True),
    sa.Column("content_type", sa.String(100), nullable=True),
    sa.Column("position", sa.Integer, nullable=False, default=0),
    sa.Column("is_main", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_property_images_property_id", "property_id"),
)

# Video slot state machine
# ------------------------
# queued     -> written by the HTTP tier before the publish job is enqueued
# completed  -> master_key, thumbnail_key and quality_keys all set
# failed     -> the job reported a failure (error_message set)
# error      -> the job crashed, or was interrupted and reset by the stale sweep
#
# The worker only ever updates a row WHERE status = 'queued', so a slot that was
# removed or replaced while its job was running is never resurrected.
property_videos = sa.Table(
    "property_videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("property_id", sa.String(32), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'error')",
            name="ck_property_videos_status",
        ),
        nullable=False,
        default="queued",
    ),
    sa.Column("original_name", sa.String(255), nullable=True),
    sa.Column("master_key", sa.String(512), nullable=True),
    sa.Column("thumbnail_key", sa.String(512), nullable=True),
    sa.Column("quality_keys", sa.JSON, nullable=True),  # {"480p": key, "720p": key, "1080p": key}
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("queued_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_property_videos_property_id", "property_id"),
    sa.Index("ix_property_videos_status", "status"),
)


def create_database(url: str = DATABASE_URL) -> Database:
    """Create a Database handle; works with SQLite or PostgreSQL URLs."""
    return Database(url)


def create_tables(url: str = DATABASE_URL) -> None:
    """Create all tables if they don't exist (synchronous, run at startup)."""
    engine = sa.create_engine(url)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()


async def configure_database(database: Database) -> None:
    """
    Configure backend-specific settings after connecting.
    SQLite needs foreign keys switched on per connection for ON DELETE CASCADE.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA foreign_keys = ON")
