"""Music Ingest Pipeline - Upload Worker.

Drains "uploadMusicJob" jobs from the durable queue and runs each one
through the fixed stage sequence:

    decoding -> staged -> scanning -> uploading_primary -> uploading_secondary
    -> persisting -> linking_parent (only with a parent collection)
    -> cleaning_up -> completed

The first failing stage aborts the attempt. Nothing already done is rolled
back; the job is nacked and the queue decides between retry and terminal
failure from the error's ``retryable`` flag. Staged temp files are released
on every exit path before the job is acked or nacked.

Concurrency:
- One asyncio loop per process runs up to WORKER_CONCURRENCY jobs at once
- Blocking work (file writes, DB calls, boto3) runs in threads; clamscan runs
  as an async subprocess
- Several worker processes may share one queue database

Retry safety:
- The media record carries an idempotency key derived from the job id and
  the content hashes, so an attempt that re-reaches persisting after a
  partial earlier attempt reuses the existing record
- Remote object keys are unique per attempt; a retried upload may leave an
  unreferenced object behind from the failed attempt

Error codes: see app.errors.ErrorCode
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import os
import signal
import socket
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from app.config import (
    CLAMAV_DB_PATH,
    CLAMSCAN_PATH,
    LEASE_HEARTBEAT_SECONDS,
    MUSIC_FILES_FOLDER,
    MUSIC_IMAGES_FOLDER,
    SCAN_FAIL_CLOSED,
    TEMP_DIR,
    UPLOAD_JOB_NAME,
    WORKER_CONCURRENCY,
    WORKER_POLL_INTERVAL_SECONDS,
)
from app.db import create_media_record, init_db
from app.errors import ErrorCode, PersistenceError, PipelineError
from app.linking import link_media_to_collection
from app.producer import UploadPayload, decode_payload
from app.queue import ClaimedJob, JobQueue
from app.scanner import VirusScanner, scan_staged_files
from app.storage import ObjectStorage, UploadResult, create_storage
from app.temp_store import PRIMARY_PREFIX, SECONDARY_PREFIX, StagedFile, TempFileStore
from app.utils.hashing import media_idempotency_key

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# --- Stages ---

STAGE_PENDING = "pending"
STAGE_DECODING = "decoding"
STAGE_STAGED = "staged"
STAGE_SCANNING = "scanning"
STAGE_UPLOADING_PRIMARY = "uploading_primary"
STAGE_UPLOADING_SECONDARY = "uploading_secondary"
STAGE_PERSISTING = "persisting"
STAGE_LINKING_PARENT = "linking_parent"
STAGE_CLEANING_UP = "cleaning_up"
STAGE_COMPLETED = "completed"
# Attempt ended by a non-retryable error (infected, corrupt payload, ...)
STAGE_ABORTED = "aborted"
# Attempt ended by a retryable error; the queue may run it again
STAGE_FAILED = "failed"

# Stages that hold remote or database resources
CRITICAL_STAGES = frozenset({STAGE_UPLOADING_PRIMARY, STAGE_UPLOADING_SECONDARY, STAGE_PERSISTING})

# How often a running pool returns expired leases to the queue
RECLAIM_INTERVAL_SECONDS = 60.0

StageHook = Callable[[str, str], None]
LinkRetryHook = Callable[[str, str], None]


# --- Dependencies and Results ---


@dataclass
class WorkerDeps:
    """Everything a job attempt needs, built once per process."""

    queue: JobQueue
    session_factory: sessionmaker
    temp_store: TempFileStore
    scanner: VirusScanner
    storage: ObjectStorage
    fail_closed: bool = SCAN_FAIL_CLOSED
    on_stage: StageHook | None = None
    # Hands a failed collection append to a background retry (huey)
    schedule_link_retry: LinkRetryHook | None = None


@dataclass
class JobOutcome:
    """Result of one job attempt."""

    job_id: str
    ok: bool
    stage: str
    queue_state: str | None = None
    media_id: str | None = None
    scan_skipped: bool = False
    error_code: str | None = None
    message: str | None = None
    result: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Attempt:
    """Mutable bookkeeping for one running attempt."""

    job_id: str
    on_stage: StageHook | None
    stage: str = STAGE_PENDING
    staged: list[StagedFile] = field(default_factory=list)
    scan_skipped: bool = False
    media_id: str | None = None

    def enter(self, stage: str) -> None:
        self.stage = stage
        logger.debug("Job %s -> %s", self.job_id, stage)
        if self.on_stage is not None:
            try:
                self.on_stage(self.job_id, stage)
            except Exception:
                logger.warning("Stage hook failed for job %s", self.job_id, exc_info=True)


# --- Stage Helpers ---


def _as_pipeline_error(error: Exception) -> PipelineError:
    if isinstance(error, PipelineError):
        return error
    return PipelineError(
        ErrorCode.WORKER_ERROR,
        f"{type(error).__name__}: {error}",
        retryable=True,
    )


def _persist_media_record(
    session_factory: sessionmaker,
    job: ClaimedJob,
    payload: UploadPayload,
    primary: UploadResult,
    secondary: UploadResult,
) -> tuple[str, bool]:
    """Create (or find) the media record and commit. Runs in a thread."""
    session = session_factory()
    try:
        record, created = create_media_record(
            session,
            title=payload.title,
            primary_uri=primary.url,
            secondary_uri=secondary.url,
            owner_id=payload.owner_id,
            job_id=job.job_id,
            idempotency_key=media_idempotency_key(
                job.job_id, payload.primary_sha256, payload.secondary_sha256
            ),
            parent_collection_id=payload.parent_collection_id,
            primary_provider_id=primary.provider_id,
            secondary_provider_id=secondary.provider_id,
        )
        session.commit()
        return record.media_id, created
    except PersistenceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(str(e)) from e
    finally:
        session.close()


async def _upload_staged(
    storage: ObjectStorage, staged: StagedFile, folder: str
) -> UploadResult:
    # Upload exactly the bytes that were scanned
    data = await asyncio.to_thread(staged.path.read_bytes)
    return await storage.upload(data, staged.path.name, folder)


async def _release_staged(temp_store: TempFileStore, staged: Sequence[StagedFile]) -> None:
    for staged_file in staged:
        await temp_store.release(staged_file.path)


async def _run_stages(job: ClaimedJob, deps: WorkerDeps, attempt: _Attempt) -> dict[str, Any]:
    attempt.enter(STAGE_DECODING)
    payload = decode_payload(job.payload)

    primary_file = await deps.temp_store.stage(
        payload.primary_content, PRIMARY_PREFIX, payload.primary_filename, job.job_id
    )
    attempt.staged.append(primary_file)
    secondary_file = await deps.temp_store.stage(
        payload.secondary_content, SECONDARY_PREFIX, payload.secondary_filename, job.job_id
    )
    attempt.staged.append(secondary_file)
    attempt.enter(STAGE_STAGED)

    attempt.enter(STAGE_SCANNING)
    scanned = await scan_staged_files(
        deps.scanner,
        [primary_file.path, secondary_file.path],
        fail_closed=deps.fail_closed,
    )
    attempt.scan_skipped = not scanned

    attempt.enter(STAGE_UPLOADING_PRIMARY)
    primary_upload = await _upload_staged(deps.storage, primary_file, MUSIC_FILES_FOLDER)

    attempt.enter(STAGE_UPLOADING_SECONDARY)
    secondary_upload = await _upload_staged(deps.storage, secondary_file, MUSIC_IMAGES_FOLDER)

    attempt.enter(STAGE_PERSISTING)
    media_id, created = await asyncio.to_thread(
        _persist_media_record,
        deps.session_factory,
        job,
        payload,
        primary_upload,
        secondary_upload,
    )
    attempt.media_id = media_id
    if not created:
        logger.info("Reusing media record %s from an earlier attempt of job %s", media_id, job.job_id)

    if payload.parent_collection_id:
        attempt.enter(STAGE_LINKING_PARENT)
        await asyncio.to_thread(
            link_media_to_collection,
            deps.session_factory,
            payload.parent_collection_id,
            media_id,
        )

    result: dict[str, Any] = {
        "media_id": media_id,
        "primary_url": primary_upload.url,
        "secondary_url": secondary_upload.url,
        "parent_collection_id": payload.parent_collection_id,
        "scan_skipped": attempt.scan_skipped,
        "record_reused": not created,
    }
    if attempt.scan_skipped:
        result["warning"] = (
            f"Virus scanning skipped: {deps.scanner.unavailable_reason or 'scanner unavailable'}"
        )
    return result


# --- Job Execution ---


async def process_job(
    job: ClaimedJob,
    deps: WorkerDeps,
    worker_id: str | None = None,
) -> JobOutcome:
    """Run one attempt of an upload job and ack or nack it.

    Never raises for pipeline failures: the error is recorded on the job via
    nack and returned in the outcome. Cancellation propagates after temp
    files are released; the lease then expires and the queue reclaims the job.

    Args:
        job: The leased job.
        deps: Worker dependencies.
        worker_id: Lease owner; ack/nack only apply while it still holds the lease.

    Returns:
        JobOutcome describing the attempt.
    """
    attempt = _Attempt(job.job_id, deps.on_stage)
    attempt.enter(STAGE_PENDING)
    logger.info(
        "Processing job %s (attempt %d/%d)", job.job_id, job.attempt, job.attempts_max
    )

    result: dict[str, Any] | None = None
    error: PipelineError | None = None
    failed_stage = STAGE_PENDING
    try:
        if job.name != UPLOAD_JOB_NAME:
            raise PipelineError(
                ErrorCode.WORKER_ERROR, f"Unknown job name: {job.name}", retryable=False
            )
        result = await _run_stages(job, deps, attempt)
    except Exception as e:
        failed_stage = attempt.stage
        error = _as_pipeline_error(e)
        if error is not e:
            logger.exception("Unexpected error in job %s at stage %s", job.job_id, failed_stage)
        else:
            logger.warning(
                "Job %s failed at stage %s: %s", job.job_id, failed_stage, error.message
            )
    finally:
        attempt.enter(STAGE_CLEANING_UP)
        await _release_staged(deps.temp_store, attempt.staged)

    if error is None:
        acked = await asyncio.to_thread(deps.queue.ack, job.job_id, result, worker_id)
        if not acked:
            # Lease expired and the job may already be running elsewhere;
            # a rerun reuses the media record through its idempotency key
            logger.warning(
                "Job %s finished after its lease was lost; outcome not recorded", job.job_id
            )
            return JobOutcome(
                job_id=job.job_id,
                ok=False,
                stage=attempt.stage,
                queue_state=None,
                media_id=attempt.media_id,
                scan_skipped=attempt.scan_skipped,
                error_code=str(ErrorCode.LEASE_EXPIRED),
                message="Lease lost before ack",
                result=result or {},
            )
        attempt.enter(STAGE_COMPLETED)
        logger.info("Job %s completed: media_id=%s", job.job_id, attempt.media_id)
        return JobOutcome(
            job_id=job.job_id,
            ok=True,
            stage=STAGE_COMPLETED,
            queue_state="completed",
            media_id=attempt.media_id,
            scan_skipped=attempt.scan_skipped,
            result=result or {},
        )

    queue_state = await asyncio.to_thread(deps.queue.nack, job.job_id, error, worker_id)
    attempt.enter(STAGE_ABORTED if not error.retryable else STAGE_FAILED)

    # Record committed with a pending link and no attempts left: hand the
    # append to the background retry so the track still reaches its album
    if (
        failed_stage == STAGE_LINKING_PARENT
        and error.retryable
        and queue_state == "failed"
        and deps.schedule_link_retry is not None
    ):
        collection_id = job.payload.get("parentCollectionId")
        if collection_id and attempt.media_id:
            deps.schedule_link_retry(collection_id, attempt.media_id)

    return JobOutcome(
        job_id=job.job_id,
        ok=False,
        stage=failed_stage,
        queue_state=queue_state,
        media_id=attempt.media_id,
        scan_skipped=attempt.scan_skipped,
        error_code=str(error.error_code),
        message=error.message,
    )


# --- Worker Pool ---


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class WorkerPool:
    """Claim jobs from the queue and run up to ``concurrency`` of them at once."""

    def __init__(
        self,
        queue: JobQueue,
        deps: WorkerDeps,
        concurrency: int = WORKER_CONCURRENCY,
        *,
        poll_interval: float = WORKER_POLL_INTERVAL_SECONDS,
        heartbeat_interval: float = LEASE_HEARTBEAT_SECONDS,
        reclaim_interval: float = RECLAIM_INTERVAL_SECONDS,
        worker_id: str | None = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if deps.queue is not queue:
            deps = dataclasses.replace(deps, queue=queue)
        self.queue = queue
        self.deps = deps
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.reclaim_interval = reclaim_interval
        self.worker_id = worker_id or _default_worker_id()
        self.completed_count = 0
        self.failed_count = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._outcomes: list[JobOutcome] | None = None
        self._stop_event: asyncio.Event | None = None
        self._pending_stop = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self, lifespan: asyncio.Event | None = None) -> None:
        """Run until request_stop() or ``lifespan`` is set, then drain in-flight jobs."""
        self._stop_event = asyncio.Event()
        if self._pending_stop:
            self._stop_event.set()
            self._pending_stop = False

        logger.info(
            "Worker pool %s started: concurrency=%d", self.worker_id, self.concurrency
        )
        last_reclaim = float("-inf")
        try:
            while not self._should_stop(lifespan):
                now = time.monotonic()
                try:
                    if now - last_reclaim >= self.reclaim_interval:
                        await asyncio.to_thread(self.queue.release_expired)
                        last_reclaim = now
                    await self._fill_slots()
                except SQLAlchemyError:
                    # Transient queue failure (e.g. database is locked); retry next pass
                    logger.exception("Queue access failed in worker pool %s", self.worker_id)
                await self._wait_for_progress()
        finally:
            await self._await_all_tasks()
            logger.info(
                "Worker pool %s stopped: completed=%d, failed=%d",
                self.worker_id,
                self.completed_count,
                self.failed_count,
            )

    def request_stop(self) -> None:
        """Stop claiming new jobs. In-flight jobs run to completion."""
        if self._stop_event is None:
            self._pending_stop = True
        else:
            self._stop_event.set()

    async def run_until_idle(self) -> list[JobOutcome]:
        """Process claimable jobs until none are left, then return their outcomes.

        Jobs still in retry backoff are not waited for.
        """
        self._outcomes = []
        try:
            while True:
                await self._fill_slots()
                if not self._tasks:
                    break
                await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
            return self._outcomes
        finally:
            self._outcomes = None

    def _should_stop(self, lifespan: asyncio.Event | None) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            return True
        return lifespan is not None and lifespan.is_set()

    async def _fill_slots(self) -> int:
        started = 0
        while len(self._tasks) < self.concurrency:
            job = await asyncio.to_thread(self.queue.claim, self.worker_id)
            if job is None:
                break
            task = asyncio.create_task(self._execute(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def _wait_for_progress(self) -> None:
        """Sleep until a job finishes, a stop is requested, or the poll interval passes."""
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait(
                {*self._tasks, stop_waiter},
                timeout=self.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_waiter

    async def _await_all_tasks(self) -> None:
        if self._tasks:
            logger.info("Waiting for %d in-flight jobs", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _execute(self, job: ClaimedJob) -> None:
        heartbeat = asyncio.create_task(self._maintain_lease(job))
        try:
            outcome = await process_job(job, self.deps, worker_id=self.worker_id)
        except Exception:
            # ack/nack itself failed; the lease will expire and the job is reclaimed
            logger.exception("Could not record outcome for job %s", job.job_id)
            return
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if outcome.ok:
            self.completed_count += 1
        else:
            self.failed_count += 1
        if self._outcomes is not None:
            self._outcomes.append(outcome)

    async def _maintain_lease(self, job: ClaimedJob) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            held = await asyncio.to_thread(self.queue.extend_lease, job.job_id, self.worker_id)
            if not held:
                logger.warning("Lease lost for job %s (worker %s)", job.job_id, self.worker_id)
                return


# --- Process Setup ---


def build_default_deps(session_factory: sessionmaker | None = None) -> WorkerDeps:
    """Build worker dependencies from config. Called once at process start."""
    from app.huey_app import enqueue_link_retry

    if session_factory is None:
        _, session_factory = init_db()

    temp_store = TempFileStore(TEMP_DIR)
    temp_store.ensure_root()
    temp_store.sweep_orphans()

    return WorkerDeps(
        queue=JobQueue(session_factory),
        session_factory=session_factory,
        temp_store=temp_store,
        scanner=VirusScanner.detect(CLAMSCAN_PATH, CLAMAV_DB_PATH),
        storage=create_storage(),
        fail_closed=SCAN_FAIL_CLOSED,
        schedule_link_retry=enqueue_link_retry,
    )


async def _serve(pool: WorkerPool, drain: bool) -> None:
    if drain:
        outcomes = await pool.run_until_idle()
        logger.info("Drained %d jobs", len(outcomes))
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pool.request_stop)
    await pool.run()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the music upload worker pool")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=WORKER_CONCURRENCY,
        help=f"Jobs processed at once (default: {WORKER_CONCURRENCY})",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process claimable jobs and exit instead of polling forever",
    )
    parser.add_argument("--temp-dir", type=Path, default=None, help="Override staging directory")
    args = parser.parse_args(argv)

    deps = build_default_deps()
    if args.temp_dir is not None:
        deps.temp_store = TempFileStore(args.temp_dir)
        deps.temp_store.ensure_root()

    pool = WorkerPool(deps.queue, deps, concurrency=args.concurrency)
    asyncio.run(_serve(pool, args.drain))
    return 0


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
