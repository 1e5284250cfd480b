"""
Job API endpoints: create, status, progress feed, download, cancel
"""
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
import logging

from mediafetch.api.deps import get_progress_channel, get_registry, verify_key
from mediafetch.models.fetch import FetchRequest, FetchResponse
from mediafetch.models.jobs import JobInfo, JobStatus
from mediafetch.services.job_registry import DownloadLease, JobRegistry
from mediafetch.services.progress_channel import ProgressChannel

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_key)])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def artifact_response(lease: DownloadLease) -> StreamingResponse:
    """Stream an open artifact; the lease is closed once the body is done"""
    return StreamingResponse(
        lease.iter_chunks(),
        media_type=lease.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{lease.filename}"',
            "Content-Length": str(lease.size),
        },
        background=BackgroundTask(lease.aclose),
    )


@router.post("/jobs", response_model=FetchResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: FetchRequest,
    request: Request,
    registry: JobRegistry = Depends(get_registry),
):
    """
    Start a new fetch job
    """
    job_id = registry.create(body.url, body.format, body.quality)
    info = registry.get(job_id)

    return FetchResponse(
        job_id=job_id,
        status=info.status.value,
        status_url=str(request.url_for("get_job_status", job_id=job_id).path),
        progress_url=str(request.url_for("stream_job_progress", job_id=job_id).path),
        download_url=str(request.url_for("download_job_artifact", job_id=job_id).path),
    )


@router.get("/jobs/{job_id}", response_model=JobInfo)
async def get_job_status(job_id: str, request: Request, registry: JobRegistry = Depends(get_registry)):
    """
    Get job status by job_id
    """
    info = registry.get(job_id)
    if info.status is JobStatus.DONE:
        info.download_url = str(request.url_for("download_job_artifact", job_id=job_id).path)
    return info


@router.get("/jobs/{job_id}/progress")
async def stream_job_progress(job_id: str, channel: ProgressChannel = Depends(get_progress_channel)):
    """
    Server-sent events feed of the job state.
    Ends with a "complete" event on terminal state or "expired" if the job disappears.
    """
    async def event_stream():
        async for event in channel.subscribe(job_id):
            yield event.to_sse()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/jobs/{job_id}/download")
async def download_job_artifact(job_id: str, registry: JobRegistry = Depends(get_registry)):
    """
    Download the artifact of a finished job. The job is released afterwards.
    """
    lease = registry.open_download(job_id)
    return artifact_response(lease)


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, registry: JobRegistry = Depends(get_registry)):
    """
    Cancel a job: kill the extractor and drop its workspace
    """
    await registry.cancel(job_id)
    return {"message": f"Job {job_id} cancelled successfully"}
