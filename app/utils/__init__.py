"""Music Ingest Pipeline - Utility modules."""

from app.utils.atomic_io import atomic_write_bytes, cleanup_orphan_temp_files
from app.utils.hashing import media_idempotency_key, sha256_bytes

__all__ = [
    # atomic_io
    "atomic_write_bytes",
    "cleanup_orphan_temp_files",
    # hashing
    "sha256_bytes",
    "media_idempotency_key",
]
