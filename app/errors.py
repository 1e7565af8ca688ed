"""Music Ingest Pipeline - Error taxonomy.

Every pipeline failure carries an error code and a ``retryable`` flag decided
at the point of failure. The queue uses the flag to choose between another
attempt and terminal failure, so a content problem (infected file, corrupt
payload) does not burn the retry budget meant for transient faults.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error codes stored on failed jobs and returned by the HTTP edge."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    PAYLOAD_CORRUPT = "PAYLOAD_CORRUPT"
    SCAN_INFECTED = "SCAN_INFECTED"
    SCAN_FAILED = "SCAN_FAILED"
    SCANNER_UNAVAILABLE = "SCANNER_UNAVAILABLE"
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    COLLECTION_NOT_FOUND = "COLLECTION_NOT_FOUND"
    CLEANUP_FAILED = "CLEANUP_FAILED"
    LEASE_EXPIRED = "LEASE_EXPIRED"
    WORKER_ERROR = "WORKER_ERROR"


class PipelineError(Exception):
    """Base exception for ingest pipeline errors."""

    retryable: bool = True

    def __init__(self, error_code: str, message: str, retryable: bool | None = None):
        self.error_code = error_code
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        super().__init__(f"{error_code}: {message}")


# --- Synchronous (never enter the queue) ---


class ValidationError(PipelineError):
    """Submission rejected before enqueue (missing file/title, size, MIME)."""

    retryable = False

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(ErrorCode.VALIDATION_FAILED, message)


class AuthenticationError(PipelineError):
    """Caller identity missing or invalid."""

    retryable = False

    def __init__(self, message: str = "Missing or invalid identity"):
        super().__init__(ErrorCode.AUTHENTICATION_FAILED, message)


# --- Worker-side, terminal ---


class PayloadDecodeError(PipelineError):
    """Job payload could not be decoded or failed its integrity check."""

    retryable = False

    def __init__(self, reason: str):
        super().__init__(ErrorCode.PAYLOAD_CORRUPT, f"Payload decode failed: {reason}")


class ScanInfectedError(PipelineError):
    """Staged content matched one or more malware signatures."""

    retryable = False

    def __init__(self, filename: str, signatures: tuple[str, ...]):
        self.filename = filename
        self.signatures = signatures
        super().__init__(
            ErrorCode.SCAN_INFECTED,
            f"File {filename} contains malware: {', '.join(signatures) or 'unknown'}",
        )


class ScannerUnavailableError(PipelineError):
    """Scanner missing while the fail-closed policy is enabled."""

    retryable = False

    def __init__(self, reason: str):
        super().__init__(ErrorCode.SCANNER_UNAVAILABLE, f"Virus scanner unavailable: {reason}")


class CollectionNotFoundError(PipelineError):
    """Parent collection referenced by the submission does not exist."""

    retryable = False

    def __init__(self, collection_id: str):
        self.collection_id = collection_id
        super().__init__(ErrorCode.COLLECTION_NOT_FOUND, f"Collection not found: {collection_id}")


# --- Worker-side, transient ---


class ScanFailedError(PipelineError):
    """Scanner ran but could not produce a verdict (engine error, timeout)."""

    def __init__(self, filename: str, reason: str):
        super().__init__(ErrorCode.SCAN_FAILED, f"Scan failed for {filename}: {reason}")


class StorageUploadError(PipelineError):
    """Remote storage rejected or failed the upload (network, auth, quota)."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        super().__init__(ErrorCode.STORAGE_UPLOAD_FAILED, f"Upload failed for {filename}: {reason}")


class PersistenceError(PipelineError):
    """Database write failed."""

    def __init__(self, reason: str):
        super().__init__(ErrorCode.PERSISTENCE_FAILED, f"Persistence failed: {reason}")


class CleanupError(PipelineError):
    """Temp file deletion failed. Logged only, never raised out of a job."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(ErrorCode.CLEANUP_FAILED, f"Cleanup failed for {path}: {reason}")


__all__ = [
    "ErrorCode",
    "PipelineError",
    "ValidationError",
    "AuthenticationError",
    "PayloadDecodeError",
    "ScanInfectedError",
    "ScannerUnavailableError",
    "CollectionNotFoundError",
    "ScanFailedError",
    "StorageUploadError",
    "PersistenceError",
    "CleanupError",
]
