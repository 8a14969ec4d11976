"""
Persistent tracking for chunked import jobs.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from baseoff_import.db.models import import_jobs, utcnow
from baseoff_import.db.retry import StoreRetryPolicy
from baseoff_import.db.session import get_engine

JOB_STATUSES = ("uploaded", "processing", "chunk_completed", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})

_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "total_rows",
        "processed_rows",
        "last_processed_offset",
        "errors_count",
        "chunk_metadata",
        "error_log",
        "processing_started_at",
        "processing_ended_at",
    }
)


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "module": row["module"],
        "file_name": row["file_name"],
        "storage_path": row["storage_path"],
        "size_mb": row["size_mb"],
        "file_hash": row["file_hash"],
        "status": row["status"],
        "total_rows": row["total_rows"],
        "processed_rows": row["processed_rows"] or 0,
        "last_processed_offset": row["last_processed_offset"] or 0,
        "errors_count": row["errors_count"] or 0,
        "chunk_metadata": row["chunk_metadata"],
        "error_log": list(row["error_log"] or []),
        "processing_started_at": row["processing_started_at"],
        "processing_ended_at": row["processing_ended_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def create_import_job(
    *,
    file_name: str,
    storage_path: str,
    size_mb: Optional[float] = None,
    file_hash: Optional[str] = None,
    module: str = "baseoff",
    user_id: Optional[str] = None,
    engine: Optional[Engine] = None,
    retry_policy: Optional[StoreRetryPolicy] = None,
) -> Dict[str, Any]:
    """Create and persist a new job in the ``uploaded`` state."""
    engine = engine or get_engine()
    retry_policy = retry_policy or StoreRetryPolicy.from_settings()
    job_id = str(uuid.uuid4())
    now = utcnow()

    values = {
        "id": job_id,
        "user_id": user_id,
        "module": module,
        "file_name": file_name,
        "storage_path": storage_path,
        "size_mb": size_mb,
        "file_hash": file_hash,
        "status": "uploaded",
        "processed_rows": 0,
        "last_processed_offset": 0,
        "errors_count": 0,
        "error_log": [],
        "created_at": now,
        "updated_at": now,
    }

    def _insert() -> None:
        with engine.begin() as conn:
            conn.execute(import_jobs.insert().values(**values))

    retry_policy.call(_insert)
    job = get_import_job(job_id, engine=engine, retry_policy=retry_policy)
    if not job:
        raise RuntimeError("Failed to create import job")
    return job


def update_import_job(
    job_id: str,
    *,
    engine: Optional[Engine] = None,
    retry_policy: Optional[StoreRetryPolicy] = None,
    **changes: Any,
) -> Optional[Dict[str, Any]]:
    """
    Update job fields and return the refreshed job.

    Only the progress/status columns may change; anything else raises
    ``ValueError``. Returns None when the job does not exist.
    """
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update import job fields: {sorted(unknown)}")

    engine = engine or get_engine()
    retry_policy = retry_policy or StoreRetryPolicy.from_settings()

    if not changes:
        return get_import_job(job_id, engine=engine, retry_policy=retry_policy)

    values = dict(changes)
    values["updated_at"] = utcnow()
    stmt = import_jobs.update().where(import_jobs.c.id == job_id).values(**values)

    def _update() -> int:
        with engine.begin() as conn:
            return conn.execute(stmt).rowcount

    if not retry_policy.call(_update):
        return None
    return get_import_job(job_id, engine=engine, retry_policy=retry_policy)


def get_import_job(
    job_id: str,
    *,
    engine: Optional[Engine] = None,
    retry_policy: Optional[StoreRetryPolicy] = None,
) -> Optional[Dict[str, Any]]:
    """Fetch a single job by ID."""
    engine = engine or get_engine()
    retry_policy = retry_policy or StoreRetryPolicy.from_settings()
    query = select(import_jobs).where(import_jobs.c.id == job_id)

    def _fetch() -> Optional[Dict[str, Any]]:
        with engine.connect() as conn:
            row = conn.execute(query).mappings().first()
            return _row_to_job(row) if row else None

    return retry_policy.call(_fetch)


def list_import_jobs(
    *,
    module: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    engine: Optional[Engine] = None,
    retry_policy: Optional[StoreRetryPolicy] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """List jobs newest first, optionally filtered by module and status."""
    engine = engine or get_engine()
    retry_policy = retry_policy or StoreRetryPolicy.from_settings()

    conditions = []
    if module:
        conditions.append(import_jobs.c.module == module)
    if status:
        conditions.append(import_jobs.c.status == status)

    query = (
        select(import_jobs)
        .where(*conditions)
        .order_by(import_jobs.c.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    count_query = select(func.count()).select_from(import_jobs).where(*conditions)

    def _fetch() -> Tuple[List[Dict[str, Any]], int]:
        with engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
            jobs = [_row_to_job(row) for row in rows]
            total = conn.execute(count_query).scalar() or 0
            return jobs, total

    return retry_policy.call(_fetch)
