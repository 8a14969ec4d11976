"""
Tests for the progress poller and its job clients.
"""
import asyncio
import json

import httpx
import pytest

from baseoff_import.db.models import baseoff_clients
from baseoff_import.domain.imports.errors import JobNotFoundError
from baseoff_import.domain.imports.poller import (
    HttpImportJobClient,
    ImportJobPoller,
    LocalImportJobClient,
    progress_fraction,
)
from tests.utils.import_files import build_csv, count_rows


class FakeJobClient:
    """In-memory job store whose continuations block until released."""

    def __init__(self, job):
        self.job = dict(job)
        self.continue_calls = []
        self.release = asyncio.Event()

    async def fetch_job(self, job_id):
        return dict(self.job) if job_id == self.job["id"] else None

    async def continue_job(self, job_id, offset):
        self.continue_calls.append(offset)
        await self.release.wait()
        processed = min((offset or 0) + 10, self.job["total_rows"])
        done = processed >= self.job["total_rows"]
        self.job.update(
            processed_rows=processed,
            status="completed" if done else "chunk_completed",
            chunk_metadata=None if done else {"next_offset": processed},
        )
        return {"success": True, "total_processed": processed, "total_rows": self.job["total_rows"]}


def _job(**overrides):
    job = {
        "id": "job-1",
        "status": "chunk_completed",
        "processed_rows": 10,
        "total_rows": 30,
        "errors_count": 0,
        "chunk_metadata": {"last_chunk_end": 10, "rows_remaining": 20, "next_offset": 10},
    }
    job.update(overrides)
    return job


async def _no_sleep(_seconds):
    await asyncio.sleep(0)


def test_progress_fraction():
    assert progress_fraction({"processed_rows": 50, "total_rows": 200}) == 0.25
    assert progress_fraction({"processed_rows": 0, "total_rows": None}) == 0.0
    assert progress_fraction({"processed_rows": 7, "total_rows": 0}) == 1.0
    assert progress_fraction({}) == 0.0


@pytest.mark.asyncio
async def test_only_one_continuation_in_flight():
    client = FakeJobClient(_job())
    poller = ImportJobPoller(client, interval=0)

    await poller.poll_once("job-1")
    await asyncio.sleep(0)
    await poller.poll_once("job-1")
    await asyncio.sleep(0)

    assert client.continue_calls == [10]
    assert poller.is_in_flight("job-1")

    client.release.set()
    await poller.wait_for_continuations()

    assert not poller.is_in_flight("job-1")


@pytest.mark.asyncio
async def test_run_continues_until_completed():
    client = FakeJobClient(_job())
    client.release.set()
    seen = []
    poller = ImportJobPoller(client, interval=0, sleep=_no_sleep, on_progress=seen.append)

    final = await asyncio.wait_for(poller.run("job-1"), timeout=5)

    assert final.status == "completed"
    assert final.progress == 1.0
    assert client.continue_calls == [10, 20]
    assert seen[0].progress == pytest.approx(10 / 30)


@pytest.mark.asyncio
async def test_terminal_job_is_not_continued():
    client = FakeJobClient(_job(status="failed", chunk_metadata=None))
    poller = ImportJobPoller(client, interval=0, sleep=_no_sleep)

    final = await poller.run("job-1")

    assert final.status == "failed"
    assert client.continue_calls == []


@pytest.mark.asyncio
async def test_uploaded_job_needs_auto_start():
    client = FakeJobClient(_job(status="uploaded", processed_rows=0, chunk_metadata=None))
    client.release.set()

    await ImportJobPoller(client, interval=0).poll_once("job-1")
    assert client.continue_calls == []

    poller = ImportJobPoller(client, interval=0, auto_start=True)
    await poller.poll_once("job-1")
    await poller.wait_for_continuations()
    assert client.continue_calls == [None]


@pytest.mark.asyncio
async def test_stop_ends_polling():
    client = FakeJobClient(_job())
    poller = ImportJobPoller(client, interval=0)

    async def stop_after_first_sleep(_seconds):
        poller.stop()

    poller._sleep = stop_after_first_sleep
    final = await poller.run("job-1")

    assert final.status == "chunk_completed"
    client.release.set()
    await poller.wait_for_continuations()


@pytest.mark.asyncio
async def test_missing_job_raises():
    poller = ImportJobPoller(FakeJobClient(_job()), interval=0)
    with pytest.raises(JobNotFoundError):
        await poller.poll_once("other")


@pytest.mark.asyncio
async def test_http_client_round_trip():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET" and request.url.path == "/import-jobs/job-1":
            return httpx.Response(200, json={"success": True, "job": _job()})
        if request.method == "GET":
            return httpx.Response(404, json={"detail": "Job not found"})
        return httpx.Response(200, json={"success": True, "is_complete": False, "next_offset": 20})

    client = HttpImportJobClient(
        "http://api.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test"),
    )
    try:
        job = await client.fetch_job("job-1")
        missing = await client.fetch_job("nope")
        response = await client.continue_job("job-1", 10)
    finally:
        await client.aclose()

    assert job["status"] == "chunk_completed"
    assert missing is None
    assert response["next_offset"] == 20
    assert json.loads(requests[-1].content) == {"job_id": "job-1", "continue_from_offset": 10}


@pytest.mark.asyncio
async def test_local_client_drives_job_to_completion(engine, make_job, make_driver):
    job = make_job(build_csv(25))
    client = LocalImportJobClient(make_driver(chunk_size=10))
    poller = ImportJobPoller(client, interval=0, auto_start=True)

    async def wait_for_chunk(_seconds):
        await poller.wait_for_continuations()

    poller._sleep = wait_for_chunk
    final = await asyncio.wait_for(poller.run(job["id"]), timeout=30)

    assert final.status == "completed"
    assert final.processed_rows == 25
    assert count_rows(engine, baseoff_clients) == 25


@pytest.mark.asyncio
async def test_local_client_reports_driver_errors(make_driver):
    client = LocalImportJobClient(make_driver())
    response = await client.continue_job("missing", None)
    assert response == {"success": False, "error": "Import job 'missing' not found", "code": "JOB_NOT_FOUND", "job_id": "missing"}
