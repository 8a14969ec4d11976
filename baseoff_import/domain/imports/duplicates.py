"""
Duplicate-file detection for imports.

The guard answers "has this exact file been imported before?" by SHA-256 of
the file bytes. It only reads and advises; callers decide whether to import
again. Hashes are recorded by the driver once a job completes.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from baseoff_import.db.models import build_upsert, file_imports, utcnow
from baseoff_import.db.retry import StoreRetryPolicy
from baseoff_import.db.session import get_engine
from baseoff_import.utils.cache import NullCache, TTLCache

logger = logging.getLogger(__name__)

CACHE_PREFIX = "check_duplicate"


def calculate_file_hash(file_content: bytes) -> str:
    """Hex SHA-256 of the file content."""
    return hashlib.sha256(file_content).hexdigest()


@dataclass
class DuplicateImportInfo:
    is_duplicate: bool
    original_import_date: Optional[datetime] = None
    original_file_name: Optional[str] = None
    records_imported: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {
            "isDuplicate": self.is_duplicate,
            "originalImportDate": self.original_import_date,
            "originalFileName": self.original_file_name,
            "recordsImported": self.records_imported,
        }


NOT_DUPLICATE = DuplicateImportInfo(is_duplicate=False)


def _module_key(module: Optional[str]) -> str:
    return (module or "").strip().lower()


class DuplicateFileGuard:
    """Read-only lookup of previously imported file hashes."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        cache: Optional[TTLCache] = None,
        retry_policy: Optional[StoreRetryPolicy] = None,
    ):
        self._engine = engine
        self.cache = cache if cache is not None else NullCache()
        self.retry_policy = retry_policy or StoreRetryPolicy.from_settings()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def check(self, file_hash: str, module: Optional[str] = None) -> DuplicateImportInfo:
        """
        Look up a hash, optionally scoped to one module.

        Without a module, the most recent import of the hash in any module
        is reported.
        """
        file_hash = (file_hash or "").strip().lower()
        if not file_hash:
            return NOT_DUPLICATE

        cache_key = (CACHE_PREFIX, file_hash, _module_key(module))
        return self.cache.get_or_load(cache_key, lambda: self._lookup(file_hash, module))

    def check_content(self, file_content: bytes, module: Optional[str] = None) -> DuplicateImportInfo:
        return self.check(calculate_file_hash(file_content), module)

    def _lookup(self, file_hash: str, module: Optional[str]) -> DuplicateImportInfo:
        query = select(
            file_imports.c.file_name,
            file_imports.c.imported_at,
            file_imports.c.records_imported,
        ).where(file_imports.c.file_hash == file_hash)
        if module:
            query = query.where(file_imports.c.module == _module_key(module))
        query = query.order_by(file_imports.c.imported_at.desc()).limit(1)

        def _fetch():
            with self.engine.connect() as conn:
                return conn.execute(query).mappings().first()

        row = self.retry_policy.call(_fetch)
        if not row:
            return NOT_DUPLICATE

        logger.info("File hash %s was already imported as '%s'", file_hash[:8], row["file_name"])
        return DuplicateImportInfo(
            is_duplicate=True,
            original_import_date=row["imported_at"],
            original_file_name=row["file_name"],
            records_imported=row["records_imported"] or 0,
        )


def record_file_import(
    *,
    file_hash: str,
    file_name: str,
    records_imported: int,
    module: Optional[str] = None,
    job_id: Optional[str] = None,
    engine: Optional[Engine] = None,
    cache: Optional[TTLCache] = None,
    retry_policy: Optional[StoreRetryPolicy] = None,
) -> None:
    """Record (or refresh) an accepted import of ``file_hash``."""
    engine = engine or get_engine()
    retry_policy = retry_policy or StoreRetryPolicy.from_settings()
    file_hash = file_hash.strip().lower()

    stmt = build_upsert(engine, file_imports, ("file_hash", "module"))
    row = {
        "file_hash": file_hash,
        "module": _module_key(module),
        "file_name": file_name,
        "job_id": job_id,
        "records_imported": records_imported,
        "imported_at": utcnow(),
    }

    def _execute() -> None:
        with engine.begin() as conn:
            conn.execute(stmt, [row])

    retry_policy.call(_execute)

    if cache is not None:
        cache.invalidate_prefix((CACHE_PREFIX, file_hash))
    logger.info("Recorded import of '%s' (hash %s, %d records)", file_name, file_hash[:8], records_imported)
