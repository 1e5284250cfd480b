"""
Shared request dependencies
"""
import secrets
from typing import Optional

from fastapi import Header, Query, Request

from mediafetch.core.config import Settings
from mediafetch.core.errors import AccessDenied, MissingAccessKey
from mediafetch.services.job_registry import JobRegistry
from mediafetch.services.progress_channel import ProgressChannel


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


def get_progress_channel(request: Request) -> ProgressChannel:
    return request.app.state.progress_channel


def verify_key(
    request: Request,
    key: Optional[str] = Query(None, description="Access key"),
    x_api_key: Optional[str] = Header(None),
):
    """
    Check the caller's access key (query parameter or X-API-Key header)
    """
    expected = get_settings(request).API_KEY
    if not expected:
        raise MissingAccessKey("Missing KEY in server configuration")

    supplied = key or x_api_key or ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise AccessDenied("Wrong key")
