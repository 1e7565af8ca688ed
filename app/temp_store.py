"""Music Ingest Pipeline - Temp file store.

Stages raw upload bytes on local disk so they can be scanned before being
trusted, and so a crash leaves evidence behind for recovery.

File names are ``{prefix}-{epoch_ms}-{16 hex}{ext}``. Names are unique per
call, so concurrent jobs can share one directory without locking.

Release is best-effort: failures are logged as CleanupError warnings and
never propagate. Orphans left by crashes are removed by sweep_orphans().
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from app.config import ORPHAN_TEMP_MAX_AGE_SECONDS, TEMP_DIR
from app.errors import CleanupError
from app.models import utc_now
from app.utils.atomic_io import atomic_write_bytes, cleanup_orphan_temp_files

logger = logging.getLogger(__name__)

# Name prefixes for the two staged files of an upload job
PRIMARY_PREFIX = "music"
SECONDARY_PREFIX = "music-image"


@dataclass(frozen=True)
class StagedFile:
    """A staged copy of uploaded content."""

    path: Path
    size_bytes: int
    owning_job_id: str | None
    created_at: datetime = field(default_factory=utc_now)


def generate_temp_filename(prefix: str, original_name: str) -> str:
    """Build a collision-free staging file name.

    Only the extension of ``original_name`` is kept, so user-supplied
    names never reach the filesystem.

    Args:
        prefix: Name prefix (e.g. "music", "music-image").
        original_name: Client-supplied file name.

    Returns:
        e.g. "music-1718000000000-9f2c4e1a7b3d5c60.mp3"
    """
    ext = Path(original_name).suffix.lower() if original_name else ""
    timestamp_ms = int(time.time() * 1000)
    return f"{prefix}-{timestamp_ms}-{secrets.token_hex(8)}{ext}"


class TempFileStore:
    """Owns staged files in one directory until they are released."""

    def __init__(self, root: str | Path = TEMP_DIR):
        self.root = Path(root)

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    async def stage(
        self,
        data: bytes,
        prefix: str,
        original_name: str,
        job_id: str | None = None,
    ) -> StagedFile:
        """Write bytes to a uniquely named file under the store root.

        The write runs in a worker thread so other jobs keep running.

        Raises:
            OSError: If the directory cannot be created or the write fails.
        """
        path = self.root / generate_temp_filename(prefix, original_name)
        await asyncio.to_thread(atomic_write_bytes, path, data)
        logger.debug("Staged %d bytes at %s (job_id=%s)", len(data), path, job_id)
        return StagedFile(path=path, size_bytes=len(data), owning_job_id=job_id)

    async def release(self, path: str | Path | None) -> bool:
        """Delete a staged file. Never raises.

        Returns:
            True if the file was removed, False if it was missing or deletion failed.
        """
        if not path:
            return False
        path = Path(path)
        try:
            await asyncio.to_thread(path.unlink)
            logger.debug("Released temp file %s", path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            error = CleanupError(str(path), str(e))
            logger.warning("%s", error.message)
            return False

    def sweep_orphans(self, max_age_seconds: int = ORPHAN_TEMP_MAX_AGE_SECONDS) -> int:
        """Remove staged files left behind by crashed attempts.

        Removes partial ``.tmp`` writes and staged files older than
        ``max_age_seconds``. Younger files, partial writes included, may belong
        to running jobs on this host and are left alone.

        Returns:
            Number of files removed.
        """
        if not self.root.exists():
            return 0

        removed = cleanup_orphan_temp_files(self.root, max_age_seconds=max_age_seconds)
        cutoff = time.time() - max_age_seconds
        for entry in self.root.iterdir():
            if not entry.is_file() or entry.suffix == ".tmp":
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Orphan sweep could not remove %s: %s", entry, e)

        if removed:
            logger.info("Orphan sweep removed %d temp files from %s", removed, self.root)
        return removed

    def list_staged(self) -> list[Path]:
        """Staged files currently on disk (inspection/tests)."""
        if not self.root.exists():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_file())
