"""
Error taxonomy for the import pipeline.

Job-level errors carry a stable ``code`` that is persisted in the job's
error log and returned to API callers. Row-level errors never fail a job.
"""


class ImportPipelineError(Exception):
    """Base class for fatal, job-level import errors."""

    code = "IMPORT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MalformedInputError(ImportPipelineError):
    """The file has no header row or no data rows."""

    code = "MALFORMED_INPUT"


class UnsupportedFormatError(ImportPipelineError):
    """The file format cannot be tokenized by the driver."""

    code = "UNSUPPORTED_FORMAT"


class JobNotFoundError(ImportPipelineError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found")


class JobStateError(ImportPipelineError):
    """The job is in a terminal state and cannot be processed again."""

    code = "JOB_NOT_RESUMABLE"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Import job '{job_id}' is '{status}' and cannot be processed")


class RowProjectionError(Exception):
    """Raised for a single bad row; recorded in the job's error log and skipped."""
