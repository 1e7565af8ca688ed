"""Music Ingest Pipeline - Huey maintenance tasks.

Huey setup with SQLite backend for housekeeping that runs beside the
worker pool. Upload jobs themselves live in the JobQueue (app.queue), which
needs leases and per-attempt ack/nack; huey handles the periodic sweeps and
single-record link retries.

How to run:
1. Start the ingest API:
   uvicorn services.ingest_api.main:app --reload

2. Start the upload worker pool:
   python -m services.worker_upload.run

3. Start the Huey consumer (periodic maintenance):
   huey_consumer.py app.huey_app.huey
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from huey import SqliteHuey, crontab

from app.config import HUEY_DB_PATH, QUEUE_DIR

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before creating Huey instance
_ensure_queue_dir()

huey = SqliteHuey(
    name="music_ingest",
    filename=str(HUEY_DB_PATH),
    immediate=False,  # Tasks queued for consumer processing
)


@lru_cache(maxsize=1)
def _session_factory():
    # Import here to avoid circular imports
    from app.db import init_db

    _, SessionFactory = init_db()
    return SessionFactory


def reclaim_expired_leases() -> list[str]:
    """Return upload jobs held by dead workers to the queue."""
    from app.queue import JobQueue

    released = JobQueue(_session_factory()).release_expired()
    if released:
        logger.info("Reclaimed %d expired leases: %s", len(released), released)
    return released


def reconcile_links() -> int:
    """Finish collection appends left pending by interrupted jobs."""
    from app.linking import reconcile_pending_links

    return reconcile_pending_links(_session_factory())


@huey.periodic_task(crontab(minute="*"))
def reclaim_expired_leases_task() -> list[str]:
    return reclaim_expired_leases()


@huey.periodic_task(crontab(minute="*/5"))
def reconcile_links_task() -> int:
    return reconcile_links()


@huey.task(retries=3, retry_delay=30)
def link_media_task(collection_id: str, media_id: str) -> bool:
    """Huey task to retry one collection append outside the worker.

    Enqueued by the worker when the in-job append keeps failing transiently
    after the media record was committed and the job has used up its
    attempts (nack already marked it failed), so the track still reaches
    its collection.

    Args:
        collection_id: Target collection.
        media_id: Media record waiting to be linked.

    Returns:
        True if a membership row was written.
    """
    from app.errors import CollectionNotFoundError
    from app.linking import link_media_to_collection

    logger.info("Link task started: collection=%s, media=%s", collection_id, media_id)
    try:
        return link_media_to_collection(_session_factory(), collection_id, media_id)
    except CollectionNotFoundError:
        # Terminal; the record is already marked failed
        logger.warning("Link task gave up: collection %s not found", collection_id)
        return False


def enqueue_link_retry(collection_id: str, media_id: str, delay_seconds: int = 0) -> None:
    """Enqueue a link retry.

    Non-blocking: returns immediately even if Huey consumer is not running.
    The task will be persisted in SQLite and processed when consumer starts.
    """
    logger.info(
        "Enqueueing link retry: collection=%s, media=%s, delay=%ds",
        collection_id,
        media_id,
        delay_seconds,
    )
    if delay_seconds > 0:
        link_media_task.schedule((collection_id, media_id), delay=delay_seconds)
    else:
        link_media_task(collection_id, media_id)
