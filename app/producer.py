"""Music Ingest Pipeline - Job producer.

Validates a submission, encodes it into a transportable job, enqueues it,
and returns the job id without waiting for any pipeline stage.

File contents travel inside the job as base64 text because the job payload
is a JSON document. This inflates payload size by roughly a third; the
sha256 of each file rides along so the worker can verify the round trip.

Enqueue request shape (specs/upload_job_request.schema.json):
    {"name": "uploadMusicJob",
     "data": {primaryContent, primaryFilename, primaryContentType, primarySha256,
              secondaryContent, secondaryFilename, secondaryContentType, secondarySha256,
              ownerId, title, parentCollectionId},
     "options": {"attempts": 3, "priority": 1}}
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from app.config import (
    ALLOWED_AUDIO_TYPES,
    ALLOWED_IMAGE_TYPES,
    JOB_ATTEMPTS,
    JOB_PRIORITY,
    MAX_UPLOAD_BYTES,
    UPLOAD_JOB_NAME,
)
from app.errors import PayloadDecodeError, ValidationError
from app.utils.hashing import sha256_bytes

if TYPE_CHECKING:
    from app.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmittedFile:
    """One uploaded file as received from the HTTP edge."""

    filename: str
    content_type: str
    content: bytes
    declared_size: int | None = None

    @property
    def size(self) -> int:
        """Declared size when the edge reported one, else the byte count."""
        if self.declared_size is not None:
            return max(self.declared_size, len(self.content))
        return len(self.content)


@dataclass(frozen=True)
class UploadPayload:
    """Decoded job payload as the worker sees it."""

    primary_content: bytes
    primary_filename: str
    secondary_content: bytes
    secondary_filename: str
    owner_id: str
    title: str
    parent_collection_id: str | None
    primary_sha256: str
    secondary_sha256: str


# --- Validation ---


def _validate_file(
    file: SubmittedFile | None,
    field: str,
    label: str,
    allowed_types: frozenset[str],
) -> SubmittedFile:
    if file is None or not file.content:
        raise ValidationError(f"{label} file required", field=field)
    if file.size > MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"{label} file exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit "
            f"({file.size} bytes)",
            field=field,
        )
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in allowed_types:
        raise ValidationError(f"Invalid file type: {file.content_type or 'unknown'}", field=field)
    return file


def validate_submission(
    title: str | None,
    primary_file: SubmittedFile | None,
    secondary_file: SubmittedFile | None,
    owner_id: str | None,
) -> str:
    """Check submission preconditions.

    Returns:
        The stripped title.

    Raises:
        ValidationError: On the first violated precondition.
    """
    _validate_file(primary_file, "music", "Music", ALLOWED_AUDIO_TYPES)
    _validate_file(secondary_file, "image", "Image", ALLOWED_IMAGE_TYPES)

    title = (title or "").strip()
    if not title:
        raise ValidationError("Title required", field="title")
    if not owner_id or not str(owner_id).strip():
        raise ValidationError("Owner id required", field="ownerId")
    return title


# --- Encoding ---


def encode_payload(
    title: str,
    primary_file: SubmittedFile,
    secondary_file: SubmittedFile,
    owner_id: str,
    parent_collection_id: str | None = None,
) -> dict[str, Any]:
    """Encode file contents and metadata into a JSON-safe job payload."""
    return {
        "primaryContent": base64.b64encode(primary_file.content).decode("ascii"),
        "primaryFilename": primary_file.filename,
        "primaryContentType": primary_file.content_type,
        "primarySha256": sha256_bytes(primary_file.content),
        "secondaryContent": base64.b64encode(secondary_file.content).decode("ascii"),
        "secondaryFilename": secondary_file.filename,
        "secondaryContentType": secondary_file.content_type,
        "secondarySha256": sha256_bytes(secondary_file.content),
        "ownerId": owner_id,
        "title": title,
        "parentCollectionId": parent_collection_id or None,
    }


def _decode_content(payload: dict[str, Any], key: str, hash_key: str) -> bytes:
    raw = payload.get(key)
    if not isinstance(raw, str) or not raw:
        raise PayloadDecodeError(f"missing {key}")
    try:
        content = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadDecodeError(f"{key} is not valid base64: {e}") from e

    expected = payload.get(hash_key)
    if expected and sha256_bytes(content) != expected:
        raise PayloadDecodeError(f"{key} does not match {hash_key}")
    return content


def decode_payload(payload: dict[str, Any]) -> UploadPayload:
    """Turn a job payload back into bytes and metadata.

    Raises:
        PayloadDecodeError: If required fields are missing, base64 is invalid,
            or a content hash does not match.
    """
    primary = _decode_content(payload, "primaryContent", "primarySha256")
    secondary = _decode_content(payload, "secondaryContent", "secondarySha256")

    for key in ("ownerId", "title"):
        if not payload.get(key):
            raise PayloadDecodeError(f"missing {key}")

    return UploadPayload(
        primary_content=primary,
        primary_filename=payload.get("primaryFilename") or "music",
        secondary_content=secondary,
        secondary_filename=payload.get("secondaryFilename") or "image",
        owner_id=str(payload["ownerId"]),
        title=str(payload["title"]),
        parent_collection_id=payload.get("parentCollectionId") or None,
        primary_sha256=payload.get("primarySha256") or sha256_bytes(primary),
        secondary_sha256=payload.get("secondarySha256") or sha256_bytes(secondary),
    )


def build_job_request(
    title: str,
    primary_file: SubmittedFile,
    secondary_file: SubmittedFile,
    owner_id: str,
    parent_collection_id: str | None = None,
    *,
    attempts: int = JOB_ATTEMPTS,
    priority: int = JOB_PRIORITY,
) -> dict[str, Any]:
    """Build the full enqueue request: name, data, options."""
    return {
        "name": UPLOAD_JOB_NAME,
        "data": encode_payload(title, primary_file, secondary_file, owner_id, parent_collection_id),
        "options": {"attempts": attempts, "priority": priority},
    }


# --- Submit ---


def submit(
    queue: JobQueue,
    title: str | None,
    primary_file: SubmittedFile | None,
    secondary_file: SubmittedFile | None,
    owner_id: str | None,
    parent_collection_id: str | None = None,
    *,
    attempts: int = JOB_ATTEMPTS,
    priority: int = JOB_PRIORITY,
) -> str:
    """Validate and enqueue a music upload.

    Returns as soon as the queue has accepted the job.

    Args:
        queue: Durable job queue.
        title: Track title (required, non-blank).
        primary_file: Audio file (audio/mpeg or audio/wav, <= 50MB).
        secondary_file: Cover image (image/jpeg, image/png or image/webp, <= 50MB).
        owner_id: Submitting user, supplied by the auth layer and trusted as-is.
        parent_collection_id: Optional album to append the track to.
        attempts: Total attempts allowed.
        priority: Queue priority (higher first).

    Returns:
        The job id.

    Raises:
        ValidationError: If any precondition fails. Nothing is enqueued.
    """
    clean_title = validate_submission(title, primary_file, secondary_file, owner_id)

    request = build_job_request(
        clean_title,
        primary_file,
        secondary_file,
        str(owner_id).strip(),
        parent_collection_id,
        attempts=attempts,
        priority=priority,
    )
    job_id = queue.enqueue(
        request["name"],
        request["data"],
        attempts=request["options"]["attempts"],
        priority=request["options"]["priority"],
    )
    logger.info(
        "Music upload accepted: job_id=%s, owner=%s, title=%r, collection=%s",
        job_id,
        owner_id,
        clean_title,
        parent_collection_id or "none",
    )
    return job_id
