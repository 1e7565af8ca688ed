"""Music Ingest Pipeline - Hashing utilities.

All hash functions return HEX DIGEST ONLY (no prefix).
"""

import hashlib


def sha256_bytes(data: bytes) -> str:
    """Compute SHA256 hash of bytes.

    Args:
        data: Bytes to hash.

    Returns:
        SHA256 hex digest (64 lowercase hex characters, no prefix).
    """
    return hashlib.sha256(data).hexdigest()


def media_idempotency_key(job_id: str, primary_sha256: str, secondary_sha256: str) -> str:
    """Compute the dedup key for the media record a job produces.

    Same job + same content => same key, so every retry of a job maps onto
    one media record. The same files submitted as a new job get a new key.

    Args:
        job_id: The producing job.
        primary_sha256: Hex digest of the audio content.
        secondary_sha256: Hex digest of the image content.

    Returns:
        64-character hex string.
    """
    material = f"{job_id}:{primary_sha256}:{secondary_sha256}"
    return sha256_bytes(material.encode("utf-8"))
