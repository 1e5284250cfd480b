"""
Job status models
"""
from pydantic import BaseModel
from typing import Optional
from enum import Enum
from datetime import datetime


class JobStatus(str, Enum):
    """Job status enumeration"""
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class OutputFormat(str, Enum):
    """Output kinds the extractor can produce"""
    MP3 = "mp3"
    MP4 = "mp4"

    @property
    def content_type(self) -> str:
        return "audio/mpeg" if self is OutputFormat.MP3 else "video/mp4"

    @property
    def extension(self) -> str:
        return f".{self.value}"


class JobInfo(BaseModel):
    """Read-only snapshot of a job"""
    job_id: str
    status: JobStatus
    format: OutputFormat
    quality: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    progress_text: str
    error_text: Optional[str] = None
    download_url: Optional[str] = None


class ProgressEvent(BaseModel):
    """One record of a live progress feed"""
    job_id: str
    status: str  # a JobStatus value, or "expired"
    progress_text: Optional[str] = None
    error_text: Optional[str] = None
    expired: bool = False
    final: bool = False

    @classmethod
    def from_job(cls, info: JobInfo) -> "ProgressEvent":
        return cls(
            job_id=info.job_id,
            status=info.status.value,
            progress_text=info.progress_text,
            error_text=info.error_text,
        )

    @classmethod
    def expired_marker(cls, job_id: str) -> "ProgressEvent":
        return cls(job_id=job_id, status="expired", expired=True, final=True)

    def to_sse(self) -> str:
        """Render as a Server-Sent Events frame"""
        data = f"data: {self.model_dump_json()}\n\n"
        if self.expired:
            return "event: expired\n" + data
        if self.final:
            return "event: complete\n" + data
        return data
