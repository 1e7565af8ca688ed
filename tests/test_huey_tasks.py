"""Tests for huey maintenance tasks (lease reclaim, link retry, reconciliation)."""

from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from app.db import collection_media_ids, create_media_record
from app.models import JOB_WAITING, LINK_FAILED, LINK_LINKED, MediaRecord, utc_now
from app.queue import JobQueue


def _seed_pending_record(SessionFactory, collection_id):
    session = SessionFactory()
    try:
        record, _ = create_media_record(
            session,
            title="Track",
            primary_uri="https://cdn.test/a.mp3",
            secondary_uri="https://cdn.test/a.png",
            owner_id="user-1",
            job_id="job-1",
            idempotency_key="f" * 64,
            parent_collection_id=collection_id,
        )
        session.commit()
        return record.media_id
    finally:
        session.close()


class TestReclaimExpiredLeases:
    """Tests for the periodic lease sweep."""

    def test_returns_abandoned_job_to_waiting(self, temp_db):
        _, _, SessionFactory = temp_db
        queue = JobQueue(SessionFactory, lease_ttl_seconds=60)
        job_id = queue.enqueue("uploadMusicJob", {}, attempts=3, priority=1)
        queue.claim("dead-worker")

        with patch("app.huey_app._session_factory", return_value=SessionFactory):
            from app.huey_app import reclaim_expired_leases

            with patch("app.queue.utc_now", return_value=utc_now() + timedelta(minutes=5)):
                released = reclaim_expired_leases()

        assert released == [job_id]
        job = queue.get(job_id)
        assert job.state == JOB_WAITING
        assert job.last_error_code == "LEASE_EXPIRED"

    def test_nothing_to_reclaim(self, temp_db):
        _, _, SessionFactory = temp_db

        with patch("app.huey_app._session_factory", return_value=SessionFactory):
            from app.huey_app import reclaim_expired_leases

            assert reclaim_expired_leases() == []


class TestLinkMediaTask:
    """Tests for the single-record link retry task."""

    def test_links_record(self, temp_db, album):
        _, _, SessionFactory = temp_db
        media_id = _seed_pending_record(SessionFactory, album)

        with patch("app.huey_app._session_factory", return_value=SessionFactory):
            from app.huey_app import link_media_task

            assert link_media_task.call_local(album, media_id) is True

        session = SessionFactory()
        try:
            assert collection_media_ids(session, album) == [media_id]
        finally:
            session.close()

    def test_missing_collection_gives_up(self, temp_db):
        _, _, SessionFactory = temp_db
        media_id = _seed_pending_record(SessionFactory, "gone")

        with patch("app.huey_app._session_factory", return_value=SessionFactory):
            from app.huey_app import link_media_task

            assert link_media_task.call_local("gone", media_id) is False

        session = SessionFactory()
        try:
            record = session.execute(select(MediaRecord)).scalar_one()
            assert record.link_state == LINK_FAILED
        finally:
            session.close()


class TestReconcileLinks:
    """Tests for the periodic reconciliation task."""

    def test_links_pending_records(self, temp_db, album):
        _, _, SessionFactory = temp_db
        media_id = _seed_pending_record(SessionFactory, album)

        with patch("app.huey_app._session_factory", return_value=SessionFactory):
            from app.huey_app import reconcile_links

            assert reconcile_links() == 1

        session = SessionFactory()
        try:
            record = session.execute(
                select(MediaRecord).where(MediaRecord.media_id == media_id)
            ).scalar_one()
            assert record.link_state == LINK_LINKED
        finally:
            session.close()


class TestEnqueueLinkRetry:
    """Tests for enqueue_link_retry."""

    def test_immediate_enqueue(self):
        with patch("app.huey_app.link_media_task") as mock_task:
            from app.huey_app import enqueue_link_retry

            enqueue_link_retry("A1", "media_1")

        mock_task.assert_called_once_with("A1", "media_1")
        mock_task.schedule.assert_not_called()

    def test_delayed_enqueue(self):
        with patch("app.huey_app.link_media_task") as mock_task:
            from app.huey_app import enqueue_link_retry

            enqueue_link_retry("A1", "media_1", delay_seconds=30)

        mock_task.schedule.assert_called_once_with(("A1", "media_1"), delay=30)
        mock_task.assert_not_called()
