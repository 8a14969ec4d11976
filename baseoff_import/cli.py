"""
Drive an import job to completion from the command line.

Polls the job and keeps invoking the chunked driver until it completes or
fails, either in-process against the configured database or through a
running API instance.

Examples:
    python -m baseoff_import.cli 3f2a...            # in-process
    python -m baseoff_import.cli 3f2a... --api-url http://localhost:8000
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from baseoff_import.core.config import settings
from baseoff_import.core.logging_config import configure_logging
from baseoff_import.domain.imports.driver import ChunkedImportDriver
from baseoff_import.domain.imports.errors import JobNotFoundError
from baseoff_import.domain.imports.poller import (
    HttpImportJobClient,
    ImportJobPoller,
    JobProgress,
    LocalImportJobClient,
)

logger = logging.getLogger(__name__)


def print_progress(snapshot: JobProgress) -> None:
    total = snapshot.total_rows if snapshot.total_rows is not None else "?"
    print(
        f"[{snapshot.status}] {snapshot.processed_rows}/{total} rows "
        f"({snapshot.progress:.1%}), {snapshot.errors_count} errors"
    )


async def drive_job(job_id: str, *, api_url: Optional[str], interval: float) -> JobProgress:
    logger.info("Driving import job %s %s", job_id, f"via {api_url}" if api_url else "in-process")
    if api_url:
        client = HttpImportJobClient(api_url)
    else:
        client = LocalImportJobClient(ChunkedImportDriver())

    poller = ImportJobPoller(client, interval=interval, auto_start=True, on_progress=print_progress)
    try:
        snapshot = await poller.run(job_id)
        await poller.wait_for_continuations()
        return snapshot
    finally:
        await client.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run a chunked import job until it completes or fails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("job_id", help="Import job id")
    parser.add_argument("--api-url", help="Drive the job through this API instead of in-process")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.import_poll_interval_seconds,
        help="Seconds between polls (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    try:
        snapshot = asyncio.run(drive_job(args.job_id, api_url=args.api_url, interval=args.interval))
    except JobNotFoundError as e:
        print(e.message, file=sys.stderr)
        return 2

    if snapshot.status == "completed":
        print(f"Import finished: {snapshot.processed_rows} rows, {snapshot.errors_count} errors")
        return 0
    print(f"Import ended with status '{snapshot.status}'", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
