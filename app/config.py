"""Music Ingest Pipeline - Configuration constants.

Module-level configuration resolved once at import time. No external config
libraries: every value has a default and can be overridden with an ``MIP_*``
environment variable. Paths are relative to the repository root by default.
"""

import os
from pathlib import Path

# Repository root (parent of app/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    """Read a positive integer from the environment.

    Invalid or out-of-range values fall back to the default.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.
        minimum: Smallest accepted value.

    Returns:
        The parsed integer or the default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value >= minimum:
                return value
        except ValueError:
            pass
    return default


def _env_float(name: str, default: float) -> float:
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = float(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _env_path(name: str, default: Path) -> Path:
    env_val = os.environ.get(name)
    return Path(env_val) if env_val else default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


# Data directories
DATA_DIR = _env_path("MIP_DATA_DIR", REPO_ROOT / "data")

# Staging directory for temp files (shared by all workers on a host)
TEMP_DIR = _env_path("MIP_TEMP_DIR", DATA_DIR / "temp")

# Database path (media records, collections, and the durable job queue)
DB_PATH = _env_path("MIP_DB_PATH", DATA_DIR / "media.db")

# Huey database path for periodic maintenance tasks
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = _env_path("MIP_HUEY_DB_PATH", QUEUE_DIR / "huey.db")

# --- Job Queue ---

# Job name used for every music upload job
UPLOAD_JOB_NAME = "uploadMusicJob"

# Default retry budget and priority applied by the producer
JOB_ATTEMPTS = _env_int("MIP_JOB_ATTEMPTS", 3)
JOB_PRIORITY = _env_int("MIP_JOB_PRIORITY", 1, minimum=0)

# Backoff before a nacked job becomes claimable again, indexed by
# (attempts_made - 1); the last value is reused for later attempts.
JOB_BACKOFF_SECONDS = (5, 30, 120)

# A claimed job not acked within this window is returned to waiting.
# Workers extend the lease every LEASE_HEARTBEAT_SECONDS while a job runs.
LEASE_TTL_SECONDS = _env_int("MIP_LEASE_TTL_SEC", 600)
LEASE_HEARTBEAT_SECONDS = _env_float("MIP_LEASE_HEARTBEAT_SEC", 60.0)

# --- Worker Pool ---

WORKER_CONCURRENCY = _env_int("MIP_WORKER_CONCURRENCY", 5)
WORKER_POLL_INTERVAL_SECONDS = _env_float("MIP_WORKER_POLL_SEC", 1.0)

# Staged files older than this are treated as orphans by the startup sweep
ORPHAN_TEMP_MAX_AGE_SECONDS = _env_int("MIP_ORPHAN_TEMP_MAX_AGE_SEC", 3600)

# --- Submission limits ---

MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50MB per file

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
# audio/mp3 is a non-standard alias some clients send for audio/mpeg
ALLOWED_AUDIO_TYPES = frozenset({"audio/mpeg", "audio/wav", "audio/mp3"})

# --- Virus Scanner ---

# Explicit overrides; when unset, discovery searches platform paths then PATH
CLAMSCAN_PATH = os.environ.get("MIP_CLAMSCAN_PATH") or None
CLAMAV_DB_PATH = os.environ.get("MIP_CLAMAV_DB_PATH") or None
SCAN_TIMEOUT_SECONDS = _env_int("MIP_SCAN_TIMEOUT_SEC", 60)

# Fail-open is the default: an unavailable scanner lets uploads through with
# a warning. Set MIP_SCAN_FAIL_CLOSED=1 to reject instead.
SCAN_FAIL_CLOSED = _env_flag("MIP_SCAN_FAIL_CLOSED")

# --- Object Storage ---

# "local" (filesystem, dev/tests) or "s3"
STORAGE_BACKEND = os.environ.get("MIP_STORAGE_BACKEND", "local")
STORAGE_DIR = _env_path("MIP_STORAGE_DIR", DATA_DIR / "storage")
STORAGE_PUBLIC_BASE_URL = os.environ.get("MIP_STORAGE_PUBLIC_BASE_URL", "")
S3_BUCKET_NAME = os.environ.get("MIP_S3_BUCKET_NAME", "")
S3_REGION = os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
S3_ENDPOINT_URL = os.environ.get("AWS_ENDPOINT_URL") or None

MUSIC_FILES_FOLDER = "/music-files"
MUSIC_IMAGES_FOLDER = "/music-images"
