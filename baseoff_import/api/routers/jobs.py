"""
Endpoints for tracking import job progress.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from baseoff_import.api.dependencies import get_db_engine
from baseoff_import.api.schemas.shared import ImportJobListResponse, ImportJobResponse, job_info
from baseoff_import.domain.imports.jobs import get_import_job, list_import_jobs

router = APIRouter(tags=["import-jobs"])


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str, engine: Engine = Depends(get_db_engine)):
    job = await run_in_threadpool(get_import_job, job_id, engine=engine)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ImportJobResponse(success=True, job=job_info(job))


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    module: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    engine: Engine = Depends(get_db_engine),
):
    jobs, total = await run_in_threadpool(
        list_import_jobs, module=module, status=status, limit=limit, offset=offset, engine=engine
    )
    return ImportJobListResponse(
        success=True,
        jobs=[job_info(job) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )
