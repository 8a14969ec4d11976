"""
Client-side progress polling with automatic chunk continuation.

The poller fetches a job on a fixed interval and reports progress. Whenever
it sees ``chunk_completed`` it fires the next driver invocation at
``chunk_metadata.next_offset``, so a multi-chunk import runs without further
user action. At most one continuation is in flight per job.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from baseoff_import.core.config import settings

from .driver import failure_response
from .errors import JobNotFoundError
from .jobs import get_import_job

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})


def progress_fraction(job: Dict[str, Any]) -> float:
    """processed_rows / max(total_rows, 1); 0.0 until the total is known."""
    processed = job.get("processed_rows") or 0
    total = job.get("total_rows") or 0
    return min(processed / max(total, 1), 1.0)


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    status: str
    processed_rows: int
    total_rows: Optional[int]
    errors_count: int
    progress: float

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "JobProgress":
        return cls(
            job_id=job["id"],
            status=job["status"],
            processed_rows=job.get("processed_rows") or 0,
            total_rows=job.get("total_rows"),
            errors_count=job.get("errors_count") or 0,
            progress=progress_fraction(job),
        )


class HttpImportJobClient:
    """Talks to the import API over HTTP."""

    def __init__(self, base_url: str, *, timeout: float = 300.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def fetch_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._client.get(f"/import-jobs/{job_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()["job"]

    async def continue_job(self, job_id: str, offset: Optional[int]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"job_id": job_id}
        if offset is not None:
            payload["continue_from_offset"] = offset
        response = await self._client.post("/import-jobs/process", json=payload)
        if response.status_code >= 500:
            logger.error("Import continuation failed: %s - %s", response.status_code, response.text)
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalImportJobClient:
    """Drives a ChunkedImportDriver in-process, off the event loop."""

    def __init__(self, driver):
        self.driver = driver

    async def fetch_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(
            get_import_job, job_id, engine=self.driver.engine, retry_policy=self.driver.retry_policy
        )

    async def continue_job(self, job_id: str, offset: Optional[int]) -> Dict[str, Any]:
        try:
            result = await asyncio.to_thread(self.driver.process_chunk, job_id, offset)
        except Exception as exc:
            return failure_response(exc, job_id)
        return result.to_response()

    async def aclose(self) -> None:
        return None


class ImportJobPoller:
    """Polls one or more jobs until they reach a terminal status."""

    def __init__(
        self,
        client,
        *,
        interval: Optional[float] = None,
        auto_start: bool = False,
        on_progress: Optional[Callable[[JobProgress], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.interval = settings.import_poll_interval_seconds if interval is None else interval
        self.auto_start = auto_start
        self.on_progress = on_progress
        self._sleep = sleep
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

    def is_in_flight(self, job_id: str) -> bool:
        return job_id in self._in_flight

    def stop(self) -> None:
        """Stop polling after the current iteration; running continuations are left to finish."""
        self._stopped.set()

    async def poll_once(self, job_id: str) -> JobProgress:
        """Fetch the job once, report it, and fire a continuation if one is due."""
        job = await self.client.fetch_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        snapshot = JobProgress.from_job(job)
        if self.on_progress:
            self.on_progress(snapshot)

        offset = self._continuation_offset(job)
        if offset is not False and job_id not in self._in_flight:
            self._in_flight.add(job_id)
            task = asyncio.create_task(self._continue(job_id, offset))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return snapshot

    def _continuation_offset(self, job: Dict[str, Any]):
        """Offset to continue from, None for the job's own offset, or False when nothing is due."""
        if job["status"] == "chunk_completed":
            metadata = job.get("chunk_metadata") or {}
            return metadata.get("next_offset", job.get("last_processed_offset"))
        if job["status"] == "uploaded" and self.auto_start:
            return None
        return False

    async def _continue(self, job_id: str, offset: Optional[int]) -> None:
        try:
            response = await self.client.continue_job(job_id, offset)
            if not response.get("success"):
                logger.warning("Continuation of job %s failed: %s", job_id, response.get("error"))
            else:
                logger.info(
                    "Job %s continued: %s/%s rows",
                    job_id,
                    response.get("total_processed"),
                    response.get("total_rows"),
                )
        except Exception:
            logger.exception("Continuation request for job %s raised", job_id)
        finally:
            self._in_flight.discard(job_id)

    async def run(self, job_id: str) -> JobProgress:
        """
        Poll until the job is terminal or :meth:`stop` is called.

        Returns the last observed progress snapshot.
        """
        self._stopped.clear()
        while True:
            snapshot = await self.poll_once(job_id)
            if snapshot.is_terminal or self._stopped.is_set():
                return snapshot
            await self._sleep(self.interval)
            if self._stopped.is_set():
                return snapshot

    async def wait_for_continuations(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
