"""
Chunked import driver.

Each call to :meth:`ChunkedImportDriver.process_chunk` processes one bounded
slice of a job's rows and returns. The job row carries everything needed to
resume (``last_processed_offset``, counters, ``chunk_metadata``), so a poller,
scheduler or CLI can keep re-invoking the driver until the job completes.

Status flow::

    uploaded -> processing -> chunk_completed -> processing -> ... -> completed
                     \\-> failed (job-level errors only)

Rows that fail projection are recorded in the job's error log and skipped;
only errors that stop the chunk mechanism itself (missing file, unreadable
format, lost store) fail the job.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.engine import Engine

from baseoff_import.core.config import settings
from baseoff_import.db.models import utcnow
from baseoff_import.db.retry import StoreRetryPolicy
from baseoff_import.db.session import get_engine
from baseoff_import.integrations import storage
from baseoff_import.utils.cache import TTLCache

from .duplicates import record_file_import
from .errors import JobNotFoundError, JobStateError
from .header_resolver import build_header_map
from .jobs import get_import_job, update_import_job
from .projector import ClientRecord, ContractRecord, ProjectedRow, project_row
from .tokenizer import detect_file_format, tokenize
from .writer import BatchUpsertWriter

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = frozenset({"uploaded", "processing", "chunk_completed"})

FileLoader = Callable[[str], bytes]
Projector = Callable[[Sequence[str], Mapping[str, int]], ProjectedRow]


@dataclass
class ChunkResult:
    job_id: str
    status: str
    processed_in_chunk: int
    total_processed: int
    total_rows: int
    is_complete: bool
    next_offset: Optional[int]
    errors_count: int
    errors_in_chunk: int = 0
    start_offset: int = 0
    end_offset: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "job_id": self.job_id,
            "status": self.status,
            "processed_in_chunk": self.processed_in_chunk,
            "total_processed": self.total_processed,
            "total_rows": self.total_rows,
            "is_complete": self.is_complete,
            "next_offset": self.next_offset,
            "errors_count": self.errors_count,
        }


def _timestamp() -> str:
    return utcnow().isoformat()


def _row_error(index: int, error: Exception) -> Dict[str, Any]:
    # The header is line 1, so data row i sits on line i + 2.
    return {"line": index + 2, "error": str(error) or type(error).__name__, "timestamp": _timestamp()}


class ChunkedImportDriver:
    """Processes one slice of an import job per call."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        file_loader: Optional[FileLoader] = None,
        writer: Optional[BatchUpsertWriter] = None,
        projector: Projector = project_row,
        chunk_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        progress_interval: Optional[int] = None,
        error_log_limit: Optional[int] = None,
        max_spreadsheet_bytes: Optional[int] = None,
        retry_policy: Optional[StoreRetryPolicy] = None,
        duplicate_cache: Optional[TTLCache] = None,
    ):
        self._engine = engine
        self.file_loader = file_loader or storage.download_file
        self.retry_policy = retry_policy or StoreRetryPolicy.from_settings()
        self.writer = writer or BatchUpsertWriter(engine, retry_policy=self.retry_policy)
        self.projector = projector
        self.chunk_size = chunk_size or settings.import_chunk_size
        self.batch_size = batch_size or settings.import_batch_size
        self.progress_interval = progress_interval or settings.import_progress_interval
        self.error_log_limit = error_log_limit or settings.import_error_log_limit
        if max_spreadsheet_bytes is None:
            max_spreadsheet_bytes = settings.import_max_spreadsheet_mb * 1024 * 1024
        self.max_spreadsheet_bytes = max_spreadsheet_bytes
        self.duplicate_cache = duplicate_cache

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def _update(self, job_id: str, **changes: Any) -> Optional[Dict[str, Any]]:
        return update_import_job(job_id, engine=self.engine, retry_policy=self.retry_policy, **changes)

    def _trim(self, error_log: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return error_log[-self.error_log_limit:]

    def process_chunk(self, job_id: str, continue_from_offset: Optional[int] = None) -> ChunkResult:
        """
        Process the next slice of ``job_id``.

        Raises:
            JobNotFoundError: no job with this id (nothing is written)
            JobStateError: the job already failed (nothing is written)
            ImportPipelineError, StorageError: the job was marked failed
        """
        job = get_import_job(job_id, engine=self.engine, retry_policy=self.retry_policy)
        if not job:
            raise JobNotFoundError(job_id)

        if job["status"] == "completed":
            logger.info("Job %s is already completed; nothing to process", job_id)
            return self._summary(job, processed_in_chunk=0)
        if job["status"] not in RESUMABLE_STATUSES:
            raise JobStateError(job_id, job["status"])

        self._update(
            job_id,
            status="processing",
            processing_started_at=job["processing_started_at"] or utcnow(),
        )

        try:
            return self._run_chunk(job, continue_from_offset)
        except Exception as exc:
            self._fail_job(job, exc)
            raise

    def _run_chunk(self, job: Dict[str, Any], continue_from_offset: Optional[int]) -> ChunkResult:
        job_id = job["id"]

        file_format = detect_file_format(job["file_name"])
        content = self.file_loader(job["storage_path"])
        tokenized = tokenize(content, file_format, max_spreadsheet_bytes=self.max_spreadsheet_bytes)
        del content

        header_map = build_header_map(tokenized.headers)
        if "cpf" not in header_map:
            logger.warning("Job %s: no CPF column among headers %s; every row will be dropped", job_id, tokenized.headers)

        total_rows = tokenized.total_rows
        floor = job["last_processed_offset"] or 0
        requested = continue_from_offset if continue_from_offset is not None else floor
        if requested < floor:
            logger.warning(
                "Job %s: continuation offset %d is behind the persisted offset %d; resuming from %d",
                job_id, requested, floor, floor,
            )
        start = min(max(requested, floor), total_rows)
        end = min(start + self.chunk_size, total_rows)

        logger.info(
            "Job %s: processing rows [%d, %d) of %d (%s)", job_id, start, end, total_rows, tokenized.file_format
        )

        base_processed = job["processed_rows"] or 0
        base_errors = job["errors_count"] or 0
        error_log: List[Dict[str, Any]] = list(job["error_log"] or [])
        clients: List[ClientRecord] = []
        contracts: List[ContractRecord] = []
        processed = 0
        errors_in_chunk = 0

        self._update(job_id, total_rows=total_rows)

        def flush() -> None:
            if not clients and not contracts:
                return
            result = self.writer.write(clients, contracts)
            if not result.ok:
                logger.warning("Job %s: batch write incomplete: %s", job_id, "; ".join(result.errors))
            clients.clear()
            contracts.clear()

        for index, raw in tokenized.iter_slice(start, end):
            try:
                projected = self.projector(tokenized.materialize(raw), header_map)
            except Exception as exc:
                errors_in_chunk += 1
                error_log.append(_row_error(index, exc))
            else:
                processed += 1
                if projected.client is not None:
                    clients.append(projected.client)
                if projected.contract is not None:
                    contracts.append(projected.contract)
                if len(clients) >= self.batch_size or len(contracts) >= self.batch_size:
                    flush()

            consumed = index + 1 - start
            if consumed % self.progress_interval == 0 and index + 1 < end:
                # Checkpoint only after the buffered rows are stored.
                flush()
                error_log = self._trim(error_log)
                self._update(
                    job_id,
                    processed_rows=base_processed + processed,
                    last_processed_offset=index + 1,
                    errors_count=base_errors + errors_in_chunk,
                    error_log=error_log,
                )
                # Let other threads run between checkpoints.
                time.sleep(0)

        flush()

        if errors_in_chunk:
            logger.warning("Job %s: skipped %d rows with errors in [%d, %d)", job_id, errors_in_chunk, start, end)

        is_complete = end >= total_rows
        total_processed = base_processed + processed
        errors_count = base_errors + errors_in_chunk
        changes: Dict[str, Any] = {
            "processed_rows": total_processed,
            "last_processed_offset": end,
            "errors_count": errors_count,
            "error_log": self._trim(error_log),
        }
        if is_complete:
            changes.update(status="completed", chunk_metadata=None, processing_ended_at=utcnow())
        else:
            changes.update(
                status="chunk_completed",
                chunk_metadata={
                    "last_chunk_end": end,
                    "rows_remaining": total_rows - end,
                    "next_offset": end,
                },
            )
        updated = self._update(job_id, **changes) or job

        if is_complete and job.get("file_hash"):
            # The job is already stored as completed and must stay that way.
            try:
                record_file_import(
                    file_hash=job["file_hash"],
                    file_name=job["file_name"],
                    records_imported=total_processed,
                    module=job.get("module"),
                    job_id=job_id,
                    engine=self.engine,
                    cache=self.duplicate_cache,
                    retry_policy=self.retry_policy,
                )
            except Exception:
                logger.warning("Job %s: could not record file hash %s", job_id, job["file_hash"], exc_info=True)

        logger.info(
            "Job %s: %s after rows [%d, %d): %d processed in chunk, %d/%d total, %d errors",
            job_id,
            updated["status"],
            start,
            end,
            processed,
            total_processed,
            total_rows,
            errors_count,
        )
        return ChunkResult(
            job_id=job_id,
            status=updated["status"],
            processed_in_chunk=processed,
            total_processed=total_processed,
            total_rows=total_rows,
            is_complete=is_complete,
            next_offset=None if is_complete else end,
            errors_count=errors_count,
            errors_in_chunk=errors_in_chunk,
            start_offset=start,
            end_offset=end,
        )

    def _summary(self, job: Dict[str, Any], processed_in_chunk: int) -> ChunkResult:
        offset = job["last_processed_offset"] or 0
        return ChunkResult(
            job_id=job["id"],
            status=job["status"],
            processed_in_chunk=processed_in_chunk,
            total_processed=job["processed_rows"] or 0,
            total_rows=job["total_rows"] or 0,
            is_complete=True,
            next_offset=None,
            errors_count=job["errors_count"] or 0,
            start_offset=offset,
            end_offset=offset,
        )

    def _fail_job(self, job: Dict[str, Any], exc: Exception) -> None:
        """Mark the job failed with the error appended to its log. Terminal."""
        code = getattr(exc, "code", None) or type(exc).__name__
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        logger.error("Job %s failed (%s): %s", job["id"], code, message, exc_info=exc)

        try:
            current = get_import_job(job["id"], engine=self.engine, retry_policy=self.retry_policy) or job
        except Exception:
            logger.warning("Job %s: could not re-read job before marking it failed", job["id"], exc_info=True)
            current = job
        error_log = list(current["error_log"] or [])
        error_log.append({"line": None, "error": message, "code": code, "timestamp": _timestamp()})
        try:
            self._update(
                job["id"],
                status="failed",
                error_log=self._trim(error_log),
                processing_ended_at=utcnow(),
            )
        except Exception:
            logger.exception("Job %s: could not persist failed status", job["id"])


def failure_response(exc: Exception, job_id: Optional[str] = None) -> Dict[str, Any]:
    """Response body for a driver call that did not produce a ChunkResult."""
    code = getattr(exc, "code", None) or "INTERNAL_ERROR"
    message = getattr(exc, "message", None) or str(exc)
    body: Dict[str, Any] = {"success": False, "error": message, "code": code}
    if job_id is not None:
        body["job_id"] = job_id
    return body
