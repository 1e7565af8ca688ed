"""Shared pytest fixtures for Music Ingest Pipeline tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.db import create_collection, init_db
from app.producer import SubmittedFile
from app.queue import JobQueue
from app.scanner import VirusScanner
from app.storage import LocalObjectStorage
from app.temp_store import TempFileStore
from services.ingest_api.main import app, override_session_factory
from services.worker_upload.run import WorkerDeps

# Minimal content with real magic numbers; the pipeline never parses media
MP3_BYTES = b"ID3\x04\x00\x00\x00\x00\x00\x00" + b"\xff\xfb\x90\x64" + b"\x00" * 2048
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 512


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def client(temp_db):
    """Create a FastAPI test client bound to the temp database.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    db_path, engine, SessionFactory = temp_db

    with TestClient(app) as client:
        yield client, SessionFactory

    app.dependency_overrides.clear()


@pytest.fixture
def queue(temp_db):
    """Job queue on the temp database with no retry backoff."""
    _, _, SessionFactory = temp_db
    return JobQueue(SessionFactory, backoff_seconds=(0,))


@pytest.fixture
def work_dir():
    """Scratch directory for temp files and local object storage."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def worker_deps(temp_db, queue, work_dir):
    """Worker dependencies with local storage and an unavailable scanner."""
    _, _, SessionFactory = temp_db
    temp_store = TempFileStore(work_dir / "temp")
    temp_store.ensure_root()
    return WorkerDeps(
        queue=queue,
        session_factory=SessionFactory,
        temp_store=temp_store,
        scanner=VirusScanner.unavailable("clamscan not found"),
        storage=LocalObjectStorage(work_dir / "storage", public_base_url="https://cdn.test"),
    )


@pytest.fixture
def music_file():
    return SubmittedFile(filename="Track One.MP3", content_type="audio/mpeg", content=MP3_BYTES)


@pytest.fixture
def image_file():
    return SubmittedFile(filename="cover.png", content_type="image/png", content=PNG_BYTES)


@pytest.fixture
def album(temp_db):
    """Seed parent collection "A1"."""
    _, _, SessionFactory = temp_db
    session = SessionFactory()
    try:
        create_collection(session, "First Album", owner_id="user-1", collection_id="A1")
        session.commit()
    finally:
        session.close()
    return "A1"
