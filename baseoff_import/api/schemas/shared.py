from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from baseoff_import.domain.imports.poller import progress_fraction


class ErrorLogEntry(BaseModel):
    """One entry of a job's error log; ``line`` is None for job-level errors."""
    line: Optional[int] = None
    error: str
    code: Optional[str] = None
    timestamp: Optional[str] = None


class ChunkMetadata(BaseModel):
    last_chunk_end: int
    rows_remaining: int
    next_offset: int


class ImportJobInfo(BaseModel):
    """State of a chunked import job."""
    id: str
    user_id: Optional[str] = None
    module: str
    file_name: str
    storage_path: str
    size_mb: Optional[float] = None
    file_hash: Optional[str] = None
    status: str
    total_rows: Optional[int] = None
    processed_rows: int = 0
    last_processed_offset: int = 0
    errors_count: int = 0
    progress: float = 0.0
    chunk_metadata: Optional[ChunkMetadata] = None
    error_log: List[ErrorLogEntry] = Field(default_factory=list)
    processing_started_at: Optional[datetime] = None
    processing_ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class ProcessImportRequest(BaseModel):
    """Driver invocation for one chunk of a job."""
    job_id: str
    continue_from_offset: Optional[int] = Field(default=None, ge=0)


class ProcessImportResponse(BaseModel):
    success: bool
    job_id: str
    status: Optional[str] = None
    processed_in_chunk: int
    total_processed: int
    total_rows: int
    is_complete: bool
    next_offset: Optional[int] = None
    errors_count: int


class ProcessImportError(BaseModel):
    success: bool = False
    error: str
    code: str
    job_id: Optional[str] = None


class CheckDuplicateRequest(BaseModel):
    """Request to check if a file hash was imported before"""
    file_hash: str
    module: Optional[str] = None

    @field_validator("file_hash")
    @classmethod
    def validate_hash(cls, value: str) -> str:
        value = value.strip().lower()
        if len(value) != 64 or any(char not in "0123456789abcdef" for char in value):
            raise ValueError("file_hash must be a hex SHA-256 digest")
        return value


class CheckDuplicateResponse(BaseModel):
    """Duplicate-check answer, in the camelCase shape the upload UI reads"""
    model_config = ConfigDict(populate_by_name=True)

    is_duplicate: bool = Field(alias="isDuplicate")
    original_import_date: Optional[datetime] = Field(default=None, alias="originalImportDate")
    original_file_name: Optional[str] = Field(default=None, alias="originalFileName")
    records_imported: int = Field(default=0, alias="recordsImported")


class CreateImportJobResponse(BaseModel):
    """Response from the upload endpoint"""
    success: bool
    job: ImportJobInfo
    duplicate: Optional[CheckDuplicateResponse] = None
    first_chunk: Optional[ProcessImportResponse] = None


class DuplicateUploadResponse(BaseModel):
    """Upload refused until the caller confirms the re-import"""
    success: bool = False
    error: str
    code: str = "DUPLICATE_FILE"
    duplicate: CheckDuplicateResponse


def job_info(job: Dict[str, Any]) -> ImportJobInfo:
    """Build the API view of a job row, including the progress fraction."""
    return ImportJobInfo(**job, progress=progress_fraction(job))
