"""Music Ingest Pipeline - Ingest API FastAPI application.

HTTP edge for music uploads. A request is validated and enqueued; the
response returns as soon as the queue accepts the job. Scanning, remote
upload and record creation happen later in the upload worker
(services/worker_upload/run.py).

Endpoints:
- POST /v1/uploads        multipart: music, image, title, album (optional)
- GET  /v1/jobs/{job_id}  job status for polling clients
- GET  /health

The owner id is read from the X-User-Id header set by the authentication
layer in front of this service and is trusted as-is.

Run with:
    uvicorn services.ingest_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, UploadFile
from fastapi.responses import JSONResponse

from app.db import init_db
from app.errors import AuthenticationError, ErrorCode
from app.errors import ValidationError as SubmissionValidationError
from app.producer import SubmittedFile, submit
from app.queue import JobQueue, lease_is_expired
from app.schemas import ErrorResponse, JobStatusResponse, UploadAcceptedResponse

logger = logging.getLogger(__name__)

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_db_session():
    """Dependency that provides a database session."""
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


def get_queue() -> JobQueue:
    """Dependency that provides the durable job queue."""
    return JobQueue(get_session_factory())


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe() -> None:
    """Sweep staged files left by crashed worker attempts (best-effort).

    Never crashes startup.
    """
    from app.temp_store import TempFileStore

    try:
        TempFileStore().sweep_orphans()
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Initializes database on startup and cleans up orphan temp files.
    """
    global _session_factory
    if _session_factory is None:
        _, _session_factory = init_db()

    _cleanup_orphan_temp_files_safe()

    yield


# --- FastAPI App ---


app = FastAPI(
    title="Music Ingest Pipeline - Ingest API",
    description="Accepts music uploads and queues them for scanning and storage.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes.

    - VALIDATION_FAILED -> 400
    - AUTHENTICATION_FAILED -> 401
    - anything else -> 500
    """
    if error_code == ErrorCode.VALIDATION_FAILED:
        return 400
    if error_code == ErrorCode.AUTHENTICATION_FAILED:
        return 401
    return 500


def make_error_response(
    error_code: str, error_message: str, field: str | None = None
) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
            field=field,
        ).model_dump(),
    )


async def _read_upload(upload: UploadFile | None) -> SubmittedFile | None:
    if upload is None:
        return None
    content = await upload.read()
    return SubmittedFile(
        filename=upload.filename or "upload",
        content_type=upload.content_type or "",
        content=content,
        declared_size=upload.size,
    )


# --- Endpoints ---


@app.post(
    "/v1/uploads",
    status_code=202,
    response_model=UploadAcceptedResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Submission rejected"},
        401: {"model": ErrorResponse, "description": "Missing identity"},
        500: {"model": ErrorResponse, "description": "Enqueue failed"},
    },
    summary="Upload a music track",
    description="Validate a music upload and queue it for processing.",
)
async def upload_music(
    queue: Annotated[JobQueue, Depends(get_queue)],
    x_user_id: Annotated[str | None, Header(description="Authenticated user id")] = None,
    music: Annotated[UploadFile | None, File(description="Audio file")] = None,
    image: Annotated[UploadFile | None, File(description="Cover image")] = None,
    title: Annotated[str | None, Form(description="Track title")] = None,
    album: Annotated[str | None, Form(description="Optional parent collection id")] = None,
):
    """Accept a music upload.

    Returns 202 with the job id once the job is durably queued. The client
    polls GET /v1/jobs/{job_id} for the outcome.
    """
    if not x_user_id or not x_user_id.strip():
        error = AuthenticationError()
        return make_error_response(error.error_code, error.message)

    try:
        job_id = submit(
            queue,
            title,
            await _read_upload(music),
            await _read_upload(image),
            x_user_id.strip(),
            album or None,
        )
    except SubmissionValidationError as e:
        return make_error_response(e.error_code, e.message, e.field)
    except Exception:
        # Log full exception server-side, return generic message to client
        logger.exception("Unexpected error while enqueueing upload")
        return make_error_response(
            ErrorCode.WORKER_ERROR,
            "An unexpected error occurred while queueing the upload",
        )

    return UploadAcceptedResponse(job_id=job_id)


@app.get(
    "/v1/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"description": "Unknown job"}},
    summary="Get upload job status",
)
def get_job_status(
    job_id: str,
    queue: Annotated[JobQueue, Depends(get_queue)],
):
    """Return the queue state, retry accounting and outcome of a job."""
    job = queue.get(job_id)
    if job is None:
        return JSONResponse(
            status_code=404,
            content={"status": "error", "error_message": f"Job not found: {job_id}"},
        )

    return JobStatusResponse(
        job_id=job.job_id,
        name=job.name,
        state=job.state,
        attempts_made=job.attempts_made,
        attempts_max=job.attempts_max,
        priority=job.priority,
        created_at=job.created_at,
        updated_at=job.updated_at,
        finished_at=job.finished_at,
        lease_expired=lease_is_expired(job),
        error_code=job.last_error_code,
        error_message=job.last_error_message,
        result=json.loads(job.result_json) if job.result_json else None,
    )


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
