"""
Shared dependencies for the API routers.

Components are built per request from the process-wide engine and the
shared duplicate-check cache; tests swap them through
``app.dependency_overrides``.
"""
from typing import Callable, Dict

from fastapi import Depends
from sqlalchemy.engine import Engine

from baseoff_import.core.config import settings
from baseoff_import.db.session import get_engine
from baseoff_import.domain.imports.driver import ChunkedImportDriver
from baseoff_import.domain.imports.duplicates import DuplicateFileGuard
from baseoff_import.integrations import storage
from baseoff_import.utils.cache import TTLCache

# Short-lived cache of duplicate-check answers; invalidated when a hash is recorded.
duplicate_cache = TTLCache(ttl_seconds=settings.duplicate_cache_ttl_seconds)

FileUploader = Callable[[bytes, str], Dict]


def get_db_engine() -> Engine:
    return get_engine()


def get_duplicate_guard(engine: Engine = Depends(get_db_engine)) -> DuplicateFileGuard:
    return DuplicateFileGuard(engine, cache=duplicate_cache)


def get_import_driver(engine: Engine = Depends(get_db_engine)) -> ChunkedImportDriver:
    return ChunkedImportDriver(engine, duplicate_cache=duplicate_cache)


def get_file_uploader() -> FileUploader:
    return storage.upload_file
