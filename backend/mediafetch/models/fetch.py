"""
Fetch request/response models
"""
from pydantic import BaseModel, Field
from typing import Optional


class FetchRequest(BaseModel):
    """Fetch request model

    Values are checked by the job registry so that the API and the
    registry reject the same inputs with the same error.
    """
    url: str = Field(..., description="Source locator (http/https URL)")
    format: str = Field("mp4", description="Output format: mp3 or mp4")
    quality: Optional[int] = Field(None, description="Maximum video height in px (mp4 only)")


class FetchResponse(BaseModel):
    """Fetch response model"""
    job_id: str = Field(..., description="Job ID for tracking")
    status: str = Field(..., description="Job status")
    status_url: str = Field(..., description="Snapshot endpoint")
    progress_url: str = Field(..., description="Server-sent events progress feed")
    download_url: str = Field(..., description="Artifact download endpoint")
