"""
Error taxonomy for the job orchestration layer

Every error carries the fields of the API error body
({"code", "message", "field"}) plus the HTTP status it maps to.
"""
from typing import Optional


class MediaFetchError(Exception):
    """Base error for all caller-facing mediafetch exceptions."""

    code = "INTERNAL_ERROR"
    status_code = 500
    field: Optional[str] = None

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if field is not None:
            self.field = field

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "field": self.field}


class ValidationError(MediaFetchError):
    """Raised when a creation request is malformed. Nothing is allocated."""

    code = "VALIDATION_ERROR"
    status_code = 400


class CapacityExceeded(MediaFetchError):
    """Raised when the admission limit of running jobs is reached."""

    code = "CAPACITY_EXCEEDED"
    status_code = 429


class ProcessError(MediaFetchError):
    """The extractor exited with a non-zero code."""

    code = "PROCESS_ERROR"
    status_code = 500


class ArtifactMissing(MediaFetchError):
    """The extractor exited cleanly but produced no artifact."""

    code = "ARTIFACT_MISSING"
    status_code = 500


class JobNotFound(MediaFetchError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    field = "job_id"


class JobNotReady(MediaFetchError):
    code = "JOB_NOT_READY"
    status_code = 409
    field = "job_id"


class JobFailed(MediaFetchError):
    code = "JOB_FAILED"
    status_code = 422
    field = "job_id"


class ArtifactGone(MediaFetchError):
    code = "ARTIFACT_GONE"
    status_code = 410
    field = "job_id"


class MissingAccessKey(MediaFetchError):
    """The server has no access key configured."""

    code = "MISSING_KEY"
    status_code = 500


class AccessDenied(MediaFetchError):
    code = "WRONG_KEY"
    status_code = 401
    field = "key"
