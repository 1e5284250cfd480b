from .fetch import FetchRequest, FetchResponse
from .jobs import JobStatus, OutputFormat, JobInfo, ProgressEvent

__all__ = [
    "FetchRequest",
    "FetchResponse",
    "JobStatus",
    "OutputFormat",
    "JobInfo",
    "ProgressEvent"
]
