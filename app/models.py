"""Music Ingest Pipeline - SQLAlchemy ORM models.

Database tables:
1. upload_jobs - durable job queue rows (state, priority, lease, retries)
2. media_records - one row per successfully ingested track
3. collections - parent collections (albums) owned elsewhere
4. collection_items - ordered membership of media records in collections
"""

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Job states
JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# Collection linkage states for a media record
LINK_NONE = "none"
LINK_PENDING = "pending"
LINK_LINKED = "linked"
LINK_FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime (SQLite returns naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class UploadJob(Base):
    """A queued unit of ingest work.

    The payload is written once at enqueue time and never rewritten.
    """

    __tablename__ = "upload_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)

    # JSON document with base64 file contents
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)

    # Higher priority is claimed first; FIFO within a priority
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry accounting
    attempts_max: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_WAITING)

    # Not claimable before this instant (retry backoff)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Lease held by the claiming worker
    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Last failure, kept for operator inspection
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outcome summary as JSON string (media_id, urls, scan status)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_claim_order", "state", "priority", "id"),
        Index("ix_jobs_lease_expires_at", "lease_expires_at"),
    )


class Collection(Base):
    """Parent collection (album). Created and managed outside the pipeline."""

    __tablename__ = "collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class MediaRecord(Base):
    """A successfully ingested track with its remote URIs."""

    __tablename__ = "media_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    media_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_uri: Mapped[str] = mapped_column(Text, nullable=False)
    secondary_uri: Mapped[str] = mapped_column(Text, nullable=False)
    primary_provider_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secondary_provider_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    parent_collection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Producing job and retry-safe dedup key (job id + content hashes)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # Saga state for the collection append that follows record creation
    link_state: Mapped[str] = mapped_column(String(16), nullable=False, default=LINK_NONE)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("ix_media_link_state", "link_state"),)


class CollectionItem(Base):
    """Membership row: one media record appended to one collection.

    Appending is a single INSERT, so concurrent appends to the same
    collection never lose each other. ``id`` order is list order.
    """

    __tablename__ = "collection_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("collections.collection_id"), nullable=False, index=True
    )
    media_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("media_records.media_id"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("collection_id", "media_id", name="uq_collection_media"),
    )
