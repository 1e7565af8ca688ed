"""Music Ingest Pipeline - Virus scanner.

ClamAV integration via the ``clamscan`` command-line engine.

The scanner is a capability object built once at process start by
VirusScanner.detect() and passed explicitly to each worker. It is either
available (engine located and runnable) or unavailable (not installed,
not runnable). There is no module-level scanner instance.

Policy (scan_staged_files):
- available + infected  -> ScanInfectedError, attempt aborted, no upload
- available + engine error -> ScanFailedError (retryable)
- unavailable -> fail-open: scanning is skipped with a warning, unless the
  fail-closed switch is on, in which case ScannerUnavailableError is raised.
  Fail-open trades safety for availability and is kept deliberately.

clamscan exit codes: 0 = clean, 1 = virus found, 2 = error.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from app.config import SCAN_TIMEOUT_SECONDS
from app.errors import ScanFailedError, ScanInfectedError, ScannerUnavailableError

logger = logging.getLogger(__name__)

SCANNER_AVAILABLE = "available"
SCANNER_UNAVAILABLE = "unavailable"

CLAMSCAN_BINARY = "clamscan"

# Search order per platform; PATH lookup is the final fallback
WINDOWS_BINARY_CANDIDATES = (
    r"C:\Program Files\ClamAV\clamscan.exe",
    r"C:\Program Files (x86)\ClamAV\clamscan.exe",
    r"C:\ClamAV\clamscan.exe",
)
POSIX_BINARY_CANDIDATES = (
    "/usr/bin/clamscan",
    "/usr/local/bin/clamscan",
    "/opt/homebrew/bin/clamscan",
)
WINDOWS_DB_CANDIDATES = (
    r"C:\Program Files\ClamAV\database",
    r"C:\Program Files (x86)\ClamAV\database",
    r"C:\ClamAV\database",
)
POSIX_DB_CANDIDATES = (
    "/var/lib/clamav",
    "/usr/local/var/db/clamav",
    "/opt/homebrew/var/lib/clamav",
)

# Timeout for the startup probe (clamscan --version)
PROBE_TIMEOUT_SECONDS = 15


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one file."""

    clean: bool
    signatures: tuple[str, ...] = ()
    skipped: bool = False


def _is_windows() -> bool:
    return sys.platform.startswith("win")


def find_clamscan_binary(override: str | None = None) -> str | None:
    """Locate the clamscan executable.

    Order: explicit override, platform install locations, then PATH.

    Returns:
        Path to the executable, or None if not found.
    """
    if override:
        if Path(override).is_file():
            return override
        resolved = shutil.which(override)
        if resolved:
            return resolved
        logger.warning("Configured clamscan path %s not found, falling back to discovery", override)

    candidates = WINDOWS_BINARY_CANDIDATES if _is_windows() else POSIX_BINARY_CANDIDATES
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate

    return shutil.which(CLAMSCAN_BINARY)


def find_clamav_database(override: str | None = None) -> str | None:
    """Locate the ClamAV signature database directory.

    Returns:
        Directory path, or None to let the engine use its compiled-in default.
    """
    if override and Path(override).is_dir():
        return override

    candidates = WINDOWS_DB_CANDIDATES if _is_windows() else POSIX_DB_CANDIDATES
    for candidate in candidates:
        if Path(candidate).is_dir():
            return candidate
    return None


def parse_signatures(output: str) -> tuple[str, ...]:
    """Extract signature names from clamscan ``<path>: <signature> FOUND`` lines."""
    signatures = []
    for line in output.splitlines():
        line = line.strip()
        if not line.endswith(" FOUND") or ": " not in line:
            continue
        signature = line.rsplit(": ", 1)[1][: -len(" FOUND")].strip()
        if signature:
            signatures.append(signature)
    return tuple(signatures)


class VirusScanner:
    """Scanning capability, fixed as available or unavailable at construction."""

    def __init__(
        self,
        binary_path: str | None,
        database_path: str | None = None,
        *,
        unavailable_reason: str | None = None,
        timeout_seconds: int = SCAN_TIMEOUT_SECONDS,
    ):
        self.binary_path = binary_path
        self.database_path = database_path
        self.timeout_seconds = timeout_seconds
        if binary_path is None and unavailable_reason is None:
            unavailable_reason = "clamscan binary not configured"
        self.unavailable_reason = unavailable_reason if binary_path is None else None

    @property
    def state(self) -> str:
        return SCANNER_AVAILABLE if self.binary_path is not None else SCANNER_UNAVAILABLE

    @property
    def available(self) -> bool:
        return self.binary_path is not None

    @classmethod
    def unavailable(cls, reason: str) -> VirusScanner:
        return cls(None, unavailable_reason=reason)

    @classmethod
    def detect(
        cls,
        binary_override: str | None = None,
        database_override: str | None = None,
        timeout_seconds: int = SCAN_TIMEOUT_SECONDS,
    ) -> VirusScanner:
        """Locate and probe the engine. Called once at process start.

        Never raises: any discovery or probe failure yields an unavailable
        scanner and a warning.
        """
        binary = find_clamscan_binary(binary_override)
        if binary is None:
            logger.warning("ClamAV not available - virus scanning disabled: clamscan not found")
            return cls.unavailable("clamscan not found")

        try:
            probe = subprocess.run(
                [binary, "--version"],
                capture_output=True,
                check=False,
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("ClamAV not available - virus scanning disabled: %s", e)
            return cls.unavailable(f"clamscan probe failed: {e}")

        if probe.returncode != 0:
            stderr = probe.stderr.decode("utf-8", errors="replace").strip()
            logger.warning("ClamAV not available - virus scanning disabled: %s", stderr)
            return cls.unavailable(f"clamscan probe exited {probe.returncode}")

        database = find_clamav_database(database_override)
        version = probe.stdout.decode("utf-8", errors="replace").strip()
        logger.info(
            "ClamAV scanner initialized: binary=%s, database=%s, version=%s",
            binary,
            database or "<engine default>",
            version,
        )
        return cls(binary, database, timeout_seconds=timeout_seconds)

    def _command(self, path: Path) -> list[str]:
        cmd = [self.binary_path, "--no-summary"]
        if self.database_path:
            cmd.append(f"--database={self.database_path}")
        cmd.append(str(path))
        return cmd

    async def scan(self, path: str | Path) -> ScanResult:
        """Scan one file.

        Returns a skipped result if the scanner is unavailable; the caller
        applies the fail-open/fail-closed policy.

        Raises:
            ScanFailedError: If the engine errors out or times out.
        """
        path = Path(path)
        if not self.available:
            return ScanResult(clean=True, skipped=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ScanFailedError(path.name, f"could not start clamscan: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ScanFailedError(
                path.name, f"clamscan timed out after {self.timeout_seconds}s"
            ) from e

        if proc.returncode == 0:
            return ScanResult(clean=True)

        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode == 1:
            signatures = parse_signatures(output)
            logger.error("File infected: %s (%s)", path, ", ".join(signatures) or "unknown")
            return ScanResult(clean=False, signatures=signatures)

        detail = stderr.decode("utf-8", errors="replace").strip() or output.strip()
        raise ScanFailedError(path.name, f"clamscan exited {proc.returncode}: {detail}")


async def scan_staged_files(
    scanner: VirusScanner,
    paths: Sequence[str | Path],
    *,
    fail_closed: bool = False,
) -> bool:
    """Apply the scan gate to every staged file of a job attempt.

    Files are scanned one after another; the first infected file aborts.

    Args:
        scanner: The startup-built scanner capability.
        paths: Staged file paths.
        fail_closed: Reject instead of skipping when the scanner is unavailable.

    Returns:
        True if the files were scanned, False if scanning was skipped (fail-open).

    Raises:
        ScanInfectedError: If any file is infected.
        ScanFailedError: If the engine fails.
        ScannerUnavailableError: If unavailable and fail_closed is set.
    """
    if not scanner.available:
        if fail_closed:
            raise ScannerUnavailableError(scanner.unavailable_reason or "unknown")
        logger.warning(
            "Virus scanning skipped - ClamAV not available (%s); proceeding fail-open",
            scanner.unavailable_reason,
        )
        return False

    for path in paths:
        result = await scanner.scan(path)
        if not result.clean:
            raise ScanInfectedError(Path(path).name, result.signatures)
        logger.info("Virus scan passed: %s", path)
    return True
