"""
Import endpoints: upload + job creation, driver invocation, duplicate checks.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from baseoff_import.api.dependencies import (
    FileUploader,
    get_db_engine,
    get_duplicate_guard,
    get_file_uploader,
    get_import_driver,
)
from baseoff_import.api.schemas.shared import (
    CheckDuplicateRequest,
    CheckDuplicateResponse,
    CreateImportJobResponse,
    DuplicateUploadResponse,
    ProcessImportError,
    ProcessImportRequest,
    ProcessImportResponse,
    job_info,
)
from baseoff_import.core.config import settings
from baseoff_import.domain.imports.driver import ChunkedImportDriver, failure_response
from baseoff_import.domain.imports.duplicates import DuplicateFileGuard, calculate_file_hash
from baseoff_import.domain.imports.errors import ImportPipelineError
from baseoff_import.domain.imports.jobs import create_import_job, get_import_job
from baseoff_import.domain.imports.tokenizer import detect_file_format
from baseoff_import.integrations.storage import StorageError, build_storage_path, delete_file

logger = logging.getLogger(__name__)

router = APIRouter(tags=["imports"])

ERROR_STATUS_CODES = {
    "JOB_NOT_FOUND": 404,
    "JOB_NOT_RESUMABLE": 409,
    "STORAGE_ERROR": 502,
}


def _error_response(exc: Exception, job_id: Optional[str] = None) -> JSONResponse:
    body = failure_response(exc, job_id)
    if isinstance(exc, (ImportPipelineError, StorageError)):
        status_code = ERROR_STATUS_CODES.get(body["code"], 422)
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=ProcessImportError(**body).model_dump())


@router.post(
    "/import-jobs",
    response_model=CreateImportJobResponse,
    status_code=201,
    responses={409: {"model": DuplicateUploadResponse}, 422: {"model": ProcessImportError}},
)
async def create_import_job_endpoint(
    file: UploadFile = File(...),
    module: str = Form("baseoff"),
    user_id: Optional[str] = Form(None),
    confirm_duplicate: bool = Form(False),
    start: bool = Form(False),
    engine: Engine = Depends(get_db_engine),
    guard: DuplicateFileGuard = Depends(get_duplicate_guard),
    driver: ChunkedImportDriver = Depends(get_import_driver),
    uploader: FileUploader = Depends(get_file_uploader),
):
    """
    Upload a client spreadsheet and create an import job for it.

    Parameters:
    - file: CSV or XLSX file
    - module: module tag the duplicate check and job are scoped to
    - confirm_duplicate: accept a file whose content was already imported
    - start: run the first chunk right away

    Returns:
    - The created job (status ``uploaded``, or the post-chunk state when ``start`` is set)
    """
    file_name = file.filename or "upload.csv"
    try:
        detect_file_format(file_name)
    except ImportPipelineError as e:
        return _error_response(e)

    file_content = await file.read()
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(file_content) > max_bytes:
        return JSONResponse(
            status_code=413,
            content={
                "success": False,
                "error": f"File exceeds the {settings.upload_max_file_size_mb} MB upload limit",
                "code": "FILE_TOO_LARGE",
            },
        )

    file_hash = calculate_file_hash(file_content)
    duplicate = await run_in_threadpool(guard.check, file_hash, module)
    duplicate_info = CheckDuplicateResponse(**duplicate.to_response()) if duplicate.is_duplicate else None
    if duplicate_info and not confirm_duplicate:
        logger.info("Upload of '%s' matches an earlier import of '%s'", file_name, duplicate.original_file_name)
        return JSONResponse(
            status_code=409,
            content=DuplicateUploadResponse(
                error=f"This file was already imported as '{duplicate.original_file_name}'. "
                "Confirm to import it again.",
                duplicate=duplicate_info,
            ).model_dump(mode="json", by_alias=True),
        )

    storage_path = build_storage_path(file_name, user_id=user_id)
    try:
        await run_in_threadpool(uploader, file_content, storage_path)
    except StorageError as e:
        logger.error("Upload of '%s' failed: %s", file_name, e)
        return _error_response(e)

    try:
        job = await run_in_threadpool(
            create_import_job,
            file_name=file_name,
            storage_path=storage_path,
            size_mb=round(len(file_content) / (1024 * 1024), 3),
            file_hash=file_hash,
            module=module,
            user_id=user_id,
            engine=engine,
        )
    except Exception:
        logger.exception("Could not create import job for '%s'; removing uploaded file", file_name)
        await run_in_threadpool(delete_file, storage_path)
        raise

    first_chunk = None
    if start:
        try:
            result = await run_in_threadpool(driver.process_chunk, job["id"])
            first_chunk = ProcessImportResponse(**result.to_response())
        except (ImportPipelineError, StorageError) as e:
            logger.warning("First chunk of job %s failed: %s", job["id"], e)
        job = await run_in_threadpool(get_import_job, job["id"], engine=engine) or job

    return CreateImportJobResponse(
        success=True,
        job=job_info(job),
        duplicate=duplicate_info,
        first_chunk=first_chunk,
    )


@router.post(
    "/import-jobs/process",
    response_model=ProcessImportResponse,
    responses={404: {"model": ProcessImportError}, 409: {"model": ProcessImportError}, 422: {"model": ProcessImportError}},
)
async def process_import_endpoint(
    request: ProcessImportRequest,
    driver: ChunkedImportDriver = Depends(get_import_driver),
):
    """Run the driver for the next chunk of a job."""
    try:
        result = await run_in_threadpool(driver.process_chunk, request.job_id, request.continue_from_offset)
    except (ImportPipelineError, StorageError) as e:
        return _error_response(e, request.job_id)
    except Exception as e:
        logger.exception("Unexpected error processing job %s", request.job_id)
        return _error_response(e, request.job_id)
    return ProcessImportResponse(**result.to_response())


@router.post("/imports/check-duplicate", response_model=CheckDuplicateResponse)
async def check_duplicate_endpoint(
    request: CheckDuplicateRequest,
    guard: DuplicateFileGuard = Depends(get_duplicate_guard),
):
    info = await run_in_threadpool(guard.check, request.file_hash, request.module)
    return CheckDuplicateResponse(**info.to_response())
