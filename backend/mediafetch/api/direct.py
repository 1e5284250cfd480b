"""
One-shot direct download endpoint
/d?url=LINK&key=KEY&format=mp4[&quality=720]

The request owns its job: if the client goes away before the artifact
is ready, the extractor is killed and the job released.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response

from mediafetch.api.deps import get_registry, verify_key
from mediafetch.api.jobs import artifact_response
from mediafetch.models.jobs import JobStatus
from mediafetch.services.job_registry import JobRegistry

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_key)])

# How often the owning request checks for a client disconnect
DISCONNECT_POLL_SECONDS = 0.5

# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


@router.get("/d")
async def direct_download(
    request: Request,
    url: str = Query("", description="Source locator"),
    format: str = Query("mp4", description="mp3 or mp4"),
    quality: Optional[str] = Query(None, description="Maximum video height in px; ignored unless a positive integer"),
    registry: JobRegistry = Depends(get_registry),
):
    """
    Fetch and stream in one request
    """
    job_id = registry.create(url, format, quality)
    waiter = asyncio.ensure_future(registry.wait_terminal(job_id))

    try:
        while not waiter.done():
            if await request.is_disconnected():
                logger.info(f"Client disconnected, cancelling job {job_id}")
                await registry.cleanup(job_id)
                return Response(status_code=CLIENT_CLOSED_REQUEST)
            await asyncio.wait({waiter}, timeout=DISCONNECT_POLL_SECONDS)
        info = waiter.result()
    finally:
        if not waiter.done():
            waiter.cancel()
            await registry.cleanup(job_id)

    if info.status is JobStatus.FAILED:
        await registry.cleanup(job_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "code": "DOWNLOAD_FAILED",
                "message": info.error_text or "Download failed",
                "field": None
            }
        )

    return artifact_response(registry.open_download(job_id))
