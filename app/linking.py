"""Music Ingest Pipeline - Collection linkage.

Creating a media record and appending it to its parent collection are two
separate commits. The record is written first with link_state="pending";
the append then flips it to "linked". If a worker dies between the two
commits, reconcile_pending_links() finishes the append later, so a record
is never silently left outside the collection it asked for.

A collection that does not exist is terminal: the record is kept (its files
are already uploaded) and marked link_state="failed" for operator review.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.db import append_to_collection
from app.errors import CollectionNotFoundError
from app.models import LINK_FAILED, LINK_PENDING, MediaRecord

logger = logging.getLogger(__name__)


def link_media_to_collection(
    session_factory: sessionmaker,
    collection_id: str,
    media_id: str,
) -> bool:
    """Append one media record to its collection and commit.

    Returns:
        True if a new membership row was written, False if already linked.

    Raises:
        CollectionNotFoundError: If the collection does not exist. The
            record's link_state is set to "failed" before re-raising.
        PersistenceError: If the database write fails.
    """
    session = session_factory()
    try:
        appended = append_to_collection(session, collection_id, media_id)
        session.commit()
    except CollectionNotFoundError:
        session.rollback()
        _mark_link_failed(session, media_id)
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if appended:
        logger.info("Appended media %s to collection %s", media_id, collection_id)
    return appended


def _mark_link_failed(session, media_id: str) -> None:
    record = session.execute(
        select(MediaRecord).where(MediaRecord.media_id == media_id)
    ).scalar_one_or_none()
    if record is None:
        return
    record.link_state = LINK_FAILED
    session.commit()
    logger.warning(
        "Media %s could not be linked: collection %s not found",
        media_id,
        record.parent_collection_id,
    )


def reconcile_pending_links(session_factory: sessionmaker, limit: int = 100) -> int:
    """Finish collection appends left pending by interrupted attempts.

    Args:
        session_factory: Session factory for the media database.
        limit: Maximum number of records handled per call.

    Returns:
        Number of records that reached link_state="linked".
    """
    session = session_factory()
    try:
        pending = session.execute(
            select(MediaRecord.media_id, MediaRecord.parent_collection_id)
            .where(MediaRecord.link_state == LINK_PENDING)
            .order_by(MediaRecord.id)
            .limit(limit)
        ).all()
    finally:
        session.close()

    linked = 0
    for media_id, collection_id in pending:
        if not collection_id:
            continue
        try:
            link_media_to_collection(session_factory, collection_id, media_id)
            linked += 1
        except CollectionNotFoundError:
            # Already marked failed; nothing more to do here
            continue

    if pending:
        logger.info("Link reconciliation: %d/%d pending records linked", linked, len(pending))
    return linked
