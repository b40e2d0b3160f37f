"""Shared pytest fixtures for all tests."""

import dataclasses
import io
from pathlib import Path
from typing import Generator

import pytest

from uploadserver.config import UploadSettings
from uploadserver.database import init_database
from uploadserver.service_locator import build_services


class BytesStream:
    """In-memory stand-in for an uploaded file part."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)


@pytest.fixture
def test_db(monkeypatch, tmp_path) -> Generator[Path, None, None]:
    """
    Create a temporary test database for each test.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setattr("uploadserver.database.DATABASE_PATH", str(db_path))
    monkeypatch.setattr("uploadserver.config.DATABASE_PATH", str(db_path))
    init_database()
    yield db_path


@pytest.fixture
def uploads_dir(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def chunks_dir(tmp_path) -> Path:
    path = tmp_path / "chunks"
    path.mkdir()
    return path


@pytest.fixture
def make_settings():
    """
    Build UploadSettings for tests; keyword arguments override the defaults.
    """
    def _make(**overrides) -> UploadSettings:
        base = UploadSettings(domain="https://files.example.com", max_size_mb=10)
        return dataclasses.replace(base, **overrides)
    return _make


@pytest.fixture
def make_services(test_db, uploads_dir, chunks_dir, make_settings):
    """
    Build the full component graph over temporary storage.

    Args:
        settings: Optional UploadSettings, defaults to make_settings()
        **hooks: fetcher, scanner, stripper, thumbnailer, cache
    """
    def _make(settings=None, **hooks):
        return build_services(
            settings or make_settings(),
            uploads_dir=str(uploads_dir),
            chunks_dir=str(chunks_dir),
            **hooks,
        )
    return _make


@pytest.fixture
def stream():
    """Factory for in-memory async readable file parts."""
    return BytesStream
