"""Music Ingest Pipeline - Atomic I/O utilities.

Atomic publish rule:
1. Write to temp path in same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

This ensures that the final path either contains complete valid data
or does not exist. Partial writes only affect the temp file, which the
startup sweep removes.
"""

import os
import time
from pathlib import Path


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, handling partial writes.

    Loops until all bytes are written, handling short writes and EINTR.

    Args:
        fd: File descriptor to write to.
        data: Bytes to write.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    view = memoryview(data)
    total_written = 0
    data_len = len(data)

    while total_written < data_len:
        try:
            written = os.write(fd, view[total_written:])
            if written == 0:
                raise OSError("os.write() returned 0 bytes unexpectedly")
            total_written += written
        except InterruptedError:
            continue


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = ".tmp",
) -> None:
    """Atomically write bytes to a file.

    Idempotent: safe to call even if temp file exists (overwrites temp).
    Never corrupts final path - atomic rename ensures all-or-nothing.

    Args:
        final_path: The target path for the final file.
        data: Bytes to write.
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Raises:
        OSError: If directory creation, write, or rename fails.
    """
    final_path = Path(final_path)
    temp_path = final_path.with_name(final_path.name + temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_all(fd, data)
        os.fsync(fd)
    except OSError:
        # Close fd and cleanup orphan temp file on write/fsync failure
        os.close(fd)
        try:
            os.remove(temp_path)
        except OSError:
            pass
        raise
    else:
        os.close(fd)

    os.replace(temp_path, final_path)

    _fsync_directory(final_path.parent)


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory.

    Helps rename durability on some filesystems. Errors are ignored.

    Args:
        dir_path: Directory path to sync.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY may not be available on all platforms
        pass


def cleanup_orphan_temp_files(
    directory: str | Path,
    temp_suffix: str = ".tmp",
    max_age_seconds: float | None = None,
) -> int:
    """Clean up orphan temp files in a directory.

    Called during startup to remove incomplete writes.

    Args:
        directory: Directory to scan for temp files.
        temp_suffix: Suffix pattern to match (default: ".tmp").
        max_age_seconds: If set, only files last modified longer ago than
            this are removed; younger ones may still be being written.

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    cutoff = time.time() - max_age_seconds if max_age_seconds is not None else None
    for temp_file in directory.glob(f"*{temp_suffix}"):
        try:
            if cutoff is not None and temp_file.stat().st_mtime >= cutoff:
                continue
            temp_file.unlink()
            removed += 1
        except OSError:
            pass  # Best-effort cleanup

    return removed
