"""Music Ingest Pipeline - Database engine, session management, and persistence primitives.

SQLAlchemy sync engine/session factory for SQLite, plus the two writes the
pipeline performs: media record creation and collection append.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Engine, create_engine, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import DB_PATH
from app.errors import CollectionNotFoundError, PersistenceError
from app.models import (
    LINK_LINKED,
    LINK_NONE,
    LINK_PENDING,
    Base,
    Collection,
    CollectionItem,
    MediaRecord,
)


def get_database_url(db_path: str | None = None) -> str:
    """Get SQLite database URL.

    Args:
        db_path: Optional path override. Defaults to config.DB_PATH.

    Returns:
        SQLite connection URL string.
    """
    path = db_path if db_path is not None else DB_PATH
    return f"sqlite:///{path}"


def create_db_engine(db_path: str | None = None, echo: bool = False) -> Engine:
    """Create SQLAlchemy engine.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = get_database_url(db_path)
    return create_engine(
        url,
        echo=echo,
        # Worker stages run DB calls on a thread pool: one session per unit of
        # work, never shared across threads. The busy timeout lets concurrent
        # writers (several jobs, several worker processes) wait for the lock.
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        Configured sessionmaker.
    """
    # - autoflush=False: explicit flush control for deterministic primitives
    # - expire_on_commit=False: objects remain usable post-commit
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | None = None, echo: bool = False) -> tuple[Engine, sessionmaker]:
    """Initialize the database: create engine, session factory, and all tables.

    This is idempotent - safe to call multiple times.

    Args:
        db_path: Optional path override for the database file.
        echo: If True, log all SQL statements.

    Returns:
        Tuple of (engine, SessionFactory).
    """
    if db_path is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path, echo=echo)
    SessionFactory = create_session_factory(engine)

    Base.metadata.create_all(engine)

    return engine, SessionFactory


def generate_media_id() -> str:
    """Generate a unique media ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


# --- Media Record Primitive ---


def find_media_by_idempotency_key(session: Session, idempotency_key: str) -> MediaRecord | None:
    stmt = select(MediaRecord).where(MediaRecord.idempotency_key == idempotency_key)
    return session.execute(stmt).scalar_one_or_none()


def create_media_record(
    session: Session,
    *,
    title: str,
    primary_uri: str,
    secondary_uri: str,
    owner_id: str,
    job_id: str,
    idempotency_key: str,
    parent_collection_id: str | None = None,
    primary_provider_id: str | None = None,
    secondary_provider_id: str | None = None,
) -> tuple[MediaRecord, bool]:
    """Create the durable media record for a finished upload.

    Retry-safe: if a record with the same idempotency key already exists
    (an earlier attempt of the same job got this far), it is returned
    unchanged and ``created`` is False.

    When ``parent_collection_id`` is set the record is written with
    link_state="pending", which persists the intent to link before the
    collection append is attempted.

    Note:
        This function does NOT commit the transaction. It calls session.flush()
        to assign the row but leaves commit responsibility to the caller.

    Args:
        session: Active database session.
        title: Track title.
        primary_uri: Remote URL of the audio file.
        secondary_uri: Remote URL of the cover image.
        owner_id: Submitting user.
        job_id: Producing job.
        idempotency_key: Dedup key for retried attempts.
        parent_collection_id: Optional collection to link into afterwards.
        primary_provider_id: Storage provider id of the audio object.
        secondary_provider_id: Storage provider id of the image object.

    Returns:
        Tuple of (MediaRecord, created).

    Raises:
        PersistenceError: If the database write fails.
    """
    try:
        existing = find_media_by_idempotency_key(session, idempotency_key)
        if existing is not None:
            return existing, False

        record = MediaRecord(
            media_id=generate_media_id(),
            title=title,
            primary_uri=primary_uri,
            secondary_uri=secondary_uri,
            primary_provider_id=primary_provider_id,
            secondary_provider_id=secondary_provider_id,
            owner_id=owner_id,
            parent_collection_id=parent_collection_id,
            job_id=job_id,
            idempotency_key=idempotency_key,
            link_state=LINK_PENDING if parent_collection_id else LINK_NONE,
        )
        nested = session.begin_nested()
        session.add(record)
        try:
            session.flush()
        except IntegrityError:
            # Lost a race with another attempt of the same job
            nested.rollback()
            existing = find_media_by_idempotency_key(session, idempotency_key)
            if existing is None:
                raise
            return existing, False
        return record, True
    except SQLAlchemyError as e:
        raise PersistenceError(str(e)) from e


# --- Collection Append Primitive ---


def append_to_collection(session: Session, collection_id: str, media_id: str) -> bool:
    """Append a media record to a collection's ordered member list.

    The append is one INSERT into collection_items; list order is insert
    order. Idempotent: a media id already in the collection is not added
    twice. Marks the media record's link_state as linked.

    Note:
        This function does NOT commit the transaction.

    Args:
        session: Active database session.
        collection_id: Target collection.
        media_id: Media record to append.

    Returns:
        True if a new membership row was written, False if already linked.

    Raises:
        CollectionNotFoundError: If the collection does not exist.
        PersistenceError: If the database write fails.
    """
    try:
        collection = session.execute(
            select(Collection).where(Collection.collection_id == collection_id)
        ).scalar_one_or_none()
        if collection is None:
            raise CollectionNotFoundError(collection_id)

        stmt = select(CollectionItem).where(
            CollectionItem.collection_id == collection_id,
            CollectionItem.media_id == media_id,
        )
        appended = False
        if session.execute(stmt).scalar_one_or_none() is None:
            nested = session.begin_nested()
            session.add(CollectionItem(collection_id=collection_id, media_id=media_id))
            try:
                session.flush()
                appended = True
            except IntegrityError:
                # Concurrent append of the same media id; already a member
                nested.rollback()

        record = session.execute(
            select(MediaRecord).where(MediaRecord.media_id == media_id)
        ).scalar_one_or_none()
        if record is not None and record.link_state != LINK_LINKED:
            record.link_state = LINK_LINKED
            session.flush()

        return appended
    except SQLAlchemyError as e:
        raise PersistenceError(str(e)) from e


def collection_media_ids(session: Session, collection_id: str) -> list[str]:
    """Return a collection's member media ids in append order."""
    stmt = (
        select(CollectionItem.media_id)
        .where(CollectionItem.collection_id == collection_id)
        .order_by(CollectionItem.id)
    )
    return list(session.execute(stmt).scalars().all())


def create_collection(
    session: Session,
    title: str,
    owner_id: str | None = None,
    collection_id: str | None = None,
) -> Collection:
    """Create a collection row.

    Collections are owned by the surrounding system; this helper exists for
    seeding and tests. Does NOT commit.
    """
    collection = Collection(
        collection_id=collection_id or uuid.uuid4().hex,
        title=title,
        owner_id=owner_id,
    )
    session.add(collection)
    session.flush()
    return collection
