"""Music Ingest Pipeline - Durable job queue.

SQLite-backed (via SQLAlchemy) queue with priority ordering, leases, and
retry accounting. Safe to share between worker processes: a claim is a
conditional UPDATE that only succeeds while the row is still waiting, so two
claimers can never both own a job.

Job lifecycle:
  waiting -> active            claim()
  active  -> completed         ack()
  active  -> waiting           nack() with budget left and a retryable error,
                               or release_expired() after a lost lease
  active  -> failed            nack() with budget exhausted or a terminal error

Retry Semantics:
----------------
attempts_max is the total number of attempts (default 3). Every finished
attempt - acked, nacked, or abandoned by a crashed worker - increments
attempts_made. A retry becomes claimable after
JOB_BACKOFF_SECONDS[attempts_made - 1] (last value reused), so attempt 1
failure waits 5s, attempt 2 failure waits 30s.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from app.config import JOB_BACKOFF_SECONDS, LEASE_TTL_SECONDS
from app.errors import ErrorCode
from app.models import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_WAITING,
    UploadJob,
    as_utc,
    utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# How many times claim() retries after losing a race for the head of the queue
CLAIM_RACE_RETRIES = 5


@dataclass(frozen=True)
class ClaimedJob:
    """A leased job handed to a worker."""

    job_id: str
    name: str
    payload: dict[str, Any]
    priority: int
    attempts_made: int
    attempts_max: int
    lease_owner: str

    @property
    def attempt(self) -> int:
        """1-based number of the attempt this lease represents."""
        return self.attempts_made + 1


def generate_job_id() -> str:
    """Generate a unique job ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


def retry_delay_seconds(attempts_made: int, delays: tuple[int, ...] = JOB_BACKOFF_SECONDS) -> int:
    """Backoff before retry number ``attempts_made`` becomes claimable."""
    if not delays:
        return 0
    index = max(0, min(attempts_made - 1, len(delays) - 1))
    return delays[index]


class JobQueue:
    """Durable, retry-aware, priority-ordered job store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        lease_ttl_seconds: int = LEASE_TTL_SECONDS,
        backoff_seconds: tuple[int, ...] = JOB_BACKOFF_SECONDS,
    ):
        self._session_factory = session_factory
        self.lease_ttl_seconds = lease_ttl_seconds
        self.backoff_seconds = backoff_seconds

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Producer side ---

    def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        attempts: int,
        priority: int,
    ) -> str:
        """Persist a new waiting job and return its id.

        Args:
            name: Job name (e.g. "uploadMusicJob").
            payload: JSON-serializable job data. Stored verbatim, never rewritten.
            attempts: Total attempts allowed (>= 1).
            priority: Higher values are claimed first.

        Returns:
            The generated job_id.
        """
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")

        job_id = generate_job_id()
        now = utc_now()
        with self._session() as session:
            session.add(
                UploadJob(
                    job_id=job_id,
                    name=name,
                    payload_json=json.dumps(payload),
                    priority=priority,
                    attempts_max=attempts,
                    attempts_made=0,
                    state=JOB_WAITING,
                    available_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info(
            "Enqueued job: job_id=%s, name=%s, priority=%d, attempts=%d",
            job_id,
            name,
            priority,
            attempts,
        )
        return job_id

    # --- Worker side ---

    def claim(self, worker_id: str, now: datetime | None = None) -> ClaimedJob | None:
        """Lease the next claimable job.

        Order: highest priority first, then FIFO by insertion. Jobs in
        retry backoff (available_at in the future) are skipped.

        Args:
            worker_id: Identifier recorded as lease owner.
            now: Optional clock override (tests).

        Returns:
            The leased job, or None if nothing is claimable.
        """
        now = now or utc_now()
        lease_expires_at = now + timedelta(seconds=self.lease_ttl_seconds)

        for _ in range(CLAIM_RACE_RETRIES):
            with self._session() as session:
                candidate_id = session.execute(
                    select(UploadJob.id)
                    .where(UploadJob.state == JOB_WAITING, UploadJob.available_at <= now)
                    .order_by(UploadJob.priority.desc(), UploadJob.id.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if candidate_id is None:
                    return None

                result = session.execute(
                    update(UploadJob)
                    .where(UploadJob.id == candidate_id, UploadJob.state == JOB_WAITING)
                    .values(
                        state=JOB_ACTIVE,
                        lease_owner=worker_id,
                        lease_expires_at=lease_expires_at,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another claimer won this row; try the next head
                    continue

                job = session.get(UploadJob, candidate_id)
                claimed = ClaimedJob(
                    job_id=job.job_id,
                    name=job.name,
                    payload=json.loads(job.payload_json),
                    priority=job.priority,
                    attempts_made=job.attempts_made,
                    attempts_max=job.attempts_max,
                    lease_owner=worker_id,
                )

            logger.info(
                "Claimed job: job_id=%s, worker=%s, attempt=%d/%d",
                claimed.job_id,
                worker_id,
                claimed.attempt,
                claimed.attempts_max,
            )
            return claimed

        return None

    def extend_lease(self, job_id: str, worker_id: str, now: datetime | None = None) -> bool:
        """Push the lease expiry forward while a job is still running.

        Returns:
            False if the worker no longer holds the lease.
        """
        now = now or utc_now()
        with self._session() as session:
            result = session.execute(
                update(UploadJob)
                .where(
                    UploadJob.job_id == job_id,
                    UploadJob.state == JOB_ACTIVE,
                    UploadJob.lease_owner == worker_id,
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=self.lease_ttl_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def ack(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Mark an active job completed.

        Args:
            job_id: The job to complete.
            result: Optional outcome summary stored as JSON.
            worker_id: If given, the ack only applies while this worker holds the lease.

        Returns:
            True if the job transitioned to completed.
        """
        now = utc_now()
        with self._session() as session:
            job = self._get_active(session, job_id, worker_id)
            if job is None:
                return False

            job.attempts_made += 1
            job.state = JOB_COMPLETED
            job.result_json = json.dumps(result) if result is not None else None
            job.last_error_code = None
            job.last_error_message = None
            job.lease_owner = None
            job.lease_expires_at = None
            job.finished_at = now
            job.updated_at = now

        logger.info("Job completed: job_id=%s", job_id)
        return True

    def nack(
        self,
        job_id: str,
        error: BaseException,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Record a failed attempt and decide between retry and terminal failure.

        The error's ``retryable`` attribute (default True) and ``error_code``
        (default WORKER_ERROR) are read off the exception.

        Args:
            job_id: The job that failed.
            error: The exception that aborted the attempt.
            worker_id: If given, the nack only applies while this worker holds the lease.
            now: Optional clock override (tests).

        Returns:
            The new state ("waiting" or "failed"), or None if the job was not
            active under this worker (lease lost).
        """
        now = now or utc_now()
        error_code = str(getattr(error, "error_code", ErrorCode.WORKER_ERROR))
        error_message = getattr(error, "message", None) or str(error) or type(error).__name__
        retryable = bool(getattr(error, "retryable", True))

        with self._session() as session:
            job = self._get_active(session, job_id, worker_id)
            if job is None:
                return None

            job.attempts_made += 1
            job.last_error_code = error_code
            job.last_error_message = error_message
            job.lease_owner = None
            job.lease_expires_at = None
            job.updated_at = now

            if retryable and job.attempts_made < job.attempts_max:
                delay = retry_delay_seconds(job.attempts_made, self.backoff_seconds)
                job.state = JOB_WAITING
                job.available_at = now + timedelta(seconds=delay)
                new_state = JOB_WAITING
                logger.info(
                    "Scheduling retry: job_id=%s, attempts=%d/%d, delay=%ds, error=%s",
                    job_id,
                    job.attempts_made,
                    job.attempts_max,
                    delay,
                    error_code,
                )
            else:
                job.state = JOB_FAILED
                job.finished_at = now
                new_state = JOB_FAILED
                logger.warning(
                    "Job failed: job_id=%s, attempts=%d/%d, retryable=%s, error=%s",
                    job_id,
                    job.attempts_made,
                    job.attempts_max,
                    retryable,
                    error_code,
                )

        return new_state

    def release_expired(self, now: datetime | None = None) -> list[str]:
        """Return jobs whose lease expired to waiting.

        A lease that expired means the worker died or stalled mid-job. The
        abandoned attempt counts against the budget so a job that keeps
        killing its worker eventually lands in failed.

        Returns:
            Job ids that were released (to waiting or failed).
        """
        now = now or utc_now()
        released: list[str] = []
        with self._session() as session:
            stmt = select(UploadJob).where(
                UploadJob.state == JOB_ACTIVE,
                UploadJob.lease_expires_at < now,
            )
            for job in session.execute(stmt).scalars().all():
                logger.info(
                    "Reclaiming expired lease: job_id=%s, worker=%s, expired_at=%s",
                    job.job_id,
                    job.lease_owner,
                    job.lease_expires_at,
                )
                job.attempts_made += 1
                job.last_error_code = ErrorCode.LEASE_EXPIRED
                job.last_error_message = f"Lease held by {job.lease_owner} expired"
                job.lease_owner = None
                job.lease_expires_at = None
                job.updated_at = now
                if job.attempts_made < job.attempts_max:
                    job.state = JOB_WAITING
                    job.available_at = now
                else:
                    job.state = JOB_FAILED
                    job.finished_at = now
                released.append(job.job_id)
        return released

    # --- Inspection ---

    def get(self, job_id: str) -> UploadJob | None:
        """Load a job row (detached) for status queries."""
        with self._session() as session:
            return session.execute(
                select(UploadJob).where(UploadJob.job_id == job_id)
            ).scalar_one_or_none()

    def counts(self) -> dict[str, int]:
        """Number of jobs per state."""
        with self._session() as session:
            rows = session.execute(
                select(UploadJob.state, func.count()).group_by(UploadJob.state)
            ).all()
        counts = {JOB_WAITING: 0, JOB_ACTIVE: 0, JOB_COMPLETED: 0, JOB_FAILED: 0}
        counts.update({state: count for state, count in rows})
        return counts

    def _get_active(
        self, session: Session, job_id: str, worker_id: str | None
    ) -> UploadJob | None:
        job = session.execute(
            select(UploadJob).where(UploadJob.job_id == job_id)
        ).scalar_one_or_none()
        if job is None:
            logger.error("Job not found: job_id=%s", job_id)
            return None
        if job.state != JOB_ACTIVE or (worker_id is not None and job.lease_owner != worker_id):
            logger.warning(
                "Ignoring outcome for job_id=%s: state=%s, lease_owner=%s, worker=%s",
                job_id,
                job.state,
                job.lease_owner,
                worker_id,
            )
            return None
        return job


def lease_is_expired(job: UploadJob, now: datetime | None = None) -> bool:
    """True if an active job's lease has run out."""
    if job.state != JOB_ACTIVE or job.lease_expires_at is None:
        return False
    return as_utc(job.lease_expires_at) < (now or utc_now())
