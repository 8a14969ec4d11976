"""
Pytest configuration and fixtures for the import pipeline tests.

Every test that touches the database gets a fresh in-memory SQLite engine
built from the same table definitions used in production, so no live
PostgreSQL or S3 is needed.
"""

import os

# The app lifespan must never try to reach the configured database in tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

from typing import Callable, Dict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from baseoff_import.db.models import ensure_tables
from baseoff_import.db.retry import NO_RETRY
from baseoff_import.db.session import set_engine
from baseoff_import.domain.imports.driver import ChunkedImportDriver
from baseoff_import.domain.imports.jobs import create_import_job
from baseoff_import.domain.imports.writer import BatchUpsertWriter
from tests.utils.import_files import InMemoryStorage


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    ensure_tables(test_engine)
    set_engine(test_engine)
    yield test_engine
    set_engine(None)
    test_engine.dispose()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def make_job(engine, storage) -> Callable[..., Dict]:
    """Store ``content`` and create an ``uploaded`` job pointing at it."""

    def _make_job(content: bytes, file_name: str = "clientes.csv", **kwargs) -> Dict:
        storage_path = f"imports/test/{len(storage.objects)}_{file_name}"
        storage.upload(content, storage_path)
        return create_import_job(
            file_name=file_name,
            storage_path=storage_path,
            size_mb=round(len(content) / (1024 * 1024), 3),
            engine=engine,
            retry_policy=NO_RETRY,
            **kwargs,
        )

    return _make_job


@pytest.fixture
def make_driver(engine, storage) -> Callable[..., ChunkedImportDriver]:
    def _make_driver(**kwargs) -> ChunkedImportDriver:
        kwargs.setdefault("file_loader", storage.download)
        kwargs.setdefault("chunk_size", 1000)
        kwargs.setdefault("batch_size", 250)
        kwargs.setdefault("progress_interval", 100)
        kwargs.setdefault("retry_policy", NO_RETRY)
        kwargs.setdefault("writer", BatchUpsertWriter(engine, retry_policy=NO_RETRY))
        return ChunkedImportDriver(engine, **kwargs)

    return _make_driver
