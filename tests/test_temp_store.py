"""Tests for the temp file store (staging, release, orphan sweep)."""

import asyncio
import os
import re
import time
from unittest.mock import patch

from app.temp_store import (
    PRIMARY_PREFIX,
    SECONDARY_PREFIX,
    TempFileStore,
    generate_temp_filename,
)

NAME_PATTERN = re.compile(r"^music-\d{13}-[0-9a-f]{16}\.mp3$")


class TestGenerateTempFilename:
    """Tests for staging file naming."""

    def test_format(self):
        name = generate_temp_filename(PRIMARY_PREFIX, "My Song.MP3")
        assert NAME_PATTERN.match(name), name

    def test_secondary_prefix(self):
        assert generate_temp_filename(SECONDARY_PREFIX, "cover.png").startswith("music-image-")

    def test_only_extension_of_client_name_kept(self):
        name = generate_temp_filename(PRIMARY_PREFIX, "../../etc/passwd.mp3")
        assert "/" not in name
        assert "passwd" not in name

    def test_no_extension(self):
        name = generate_temp_filename(PRIMARY_PREFIX, "track")
        assert re.match(r"^music-\d{13}-[0-9a-f]{16}$", name)

    def test_names_unique(self):
        names = {generate_temp_filename(PRIMARY_PREFIX, "a.mp3") for _ in range(500)}
        assert len(names) == 500


class TestStageAndRelease:
    """Tests for TempFileStore.stage and release."""

    def test_stage_writes_bytes(self, tmp_path):
        store = TempFileStore(tmp_path / "temp")

        staged = asyncio.run(store.stage(b"audio", PRIMARY_PREFIX, "a.mp3", job_id="job-1"))

        assert staged.path.parent == tmp_path / "temp"
        assert staged.path.read_bytes() == b"audio"
        assert staged.size_bytes == 5
        assert staged.owning_job_id == "job-1"
        assert store.list_staged() == [staged.path]

    def test_concurrent_stages_do_not_collide(self, tmp_path):
        store = TempFileStore(tmp_path)

        async def stage_many():
            return await asyncio.gather(
                *(store.stage(bytes([i]), PRIMARY_PREFIX, "a.mp3") for i in range(20))
            )

        staged = asyncio.run(stage_many())

        assert len({s.path for s in staged}) == 20
        assert sorted(s.path.read_bytes() for s in staged) == [bytes([i]) for i in range(20)]

    def test_release_deletes(self, tmp_path):
        store = TempFileStore(tmp_path)
        staged = asyncio.run(store.stage(b"x", PRIMARY_PREFIX, "a.mp3"))

        assert asyncio.run(store.release(staged.path)) is True
        assert not staged.path.exists()

    def test_release_missing_file_is_quiet(self, tmp_path):
        store = TempFileStore(tmp_path)
        assert asyncio.run(store.release(tmp_path / "gone.mp3")) is False
        assert asyncio.run(store.release(None)) is False

    def test_release_failure_logged_not_raised(self, tmp_path, caplog):
        store = TempFileStore(tmp_path)
        staged = asyncio.run(store.stage(b"x", PRIMARY_PREFIX, "a.mp3"))

        with (
            patch("pathlib.Path.unlink", side_effect=PermissionError("locked")),
            caplog.at_level("WARNING", logger="app.temp_store"),
        ):
            assert asyncio.run(store.release(staged.path)) is False

        assert "Cleanup failed" in caplog.text
        assert staged.path.exists()


class TestSweepOrphans:
    """Tests for startup orphan recovery."""

    def test_removes_old_files_and_partials(self, tmp_path):
        store = TempFileStore(tmp_path)
        old = tmp_path / "music-1-aaaa.mp3"
        old.write_bytes(b"old")
        hour_ago = time.time() - 7200
        os.utime(old, (hour_ago, hour_ago))
        partial = tmp_path / "music-2-bbbb.mp3.tmp"
        partial.write_bytes(b"partial")
        os.utime(partial, (hour_ago, hour_ago))
        fresh = tmp_path / "music-3-cccc.mp3"
        fresh.write_bytes(b"fresh")

        removed = store.sweep_orphans(max_age_seconds=3600)

        assert removed == 2
        assert not old.exists()
        assert not partial.exists()
        assert fresh.exists()

    def test_fresh_partial_write_survives(self, tmp_path):
        """A .tmp file still being written by another worker is left alone."""
        store = TempFileStore(tmp_path)
        in_progress = tmp_path / "music-123-abcd.mp3.tmp"
        in_progress.write_bytes(b"partial")

        assert store.sweep_orphans(max_age_seconds=3600) == 0
        assert in_progress.exists()

    def test_missing_root(self, tmp_path):
        assert TempFileStore(tmp_path / "missing").sweep_orphans() == 0
