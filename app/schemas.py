"""Music Ingest Pipeline - Pydantic models for API responses.

Pydantic models for response validation corresponding to JSON schemas in
/specs. Used by FastAPI for runtime validation and OpenAPI docs.
"""

from datetime import datetime  # noqa: I001
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Response Models ---


class UploadAcceptedResponse(BaseModel):
    """Response for an accepted music upload (job enqueued, not yet processed)."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="accepted", description="Operation status")
    job_id: str = Field(..., description="Identifier of the queued upload job")
    message: str = Field(
        default="Music upload is being processed",
        description="Human-readable status message",
    )


class ErrorResponse(BaseModel):
    """Response for rejected requests."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")
    field: str | None = Field(default=None, description="Offending form field, if any")


class JobStatusResponse(BaseModel):
    """Upload job status for polling clients.

    Corresponds to specs/upload_job_status.schema.json.
    """

    model_config = ConfigDict(extra="forbid")

    schema_id: str = Field(default="upload_job_status.v1", description="Schema identifier")
    job_id: str = Field(..., description="Unique job identifier")
    name: str = Field(..., description="Job name")
    state: str = Field(..., description="waiting, active, completed or failed")
    attempts_made: int = Field(..., ge=0, description="Finished attempts so far")
    attempts_max: int = Field(..., ge=1, description="Total attempts allowed")
    priority: int = Field(..., description="Queue priority (higher first)")
    created_at: datetime = Field(..., description="When the job was enqueued")
    updated_at: datetime = Field(..., description="Last state change")
    finished_at: datetime | None = Field(default=None, description="When the job finished")
    lease_expired: bool = Field(
        default=False,
        description="True if the job is active but its worker stopped renewing the lease",
    )
    error_code: str | None = Field(default=None, description="Last error code")
    error_message: str | None = Field(default=None, description="Last error message")
    result: dict[str, Any] | None = Field(default=None, description="Outcome summary")


__all__ = [
    "UploadAcceptedResponse",
    "ErrorResponse",
    "JobStatusResponse",
]
