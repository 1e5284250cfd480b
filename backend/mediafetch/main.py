"""
Media fetch service
Backend API - FastAPI Application
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from mediafetch.api import direct, jobs
from mediafetch.core.config import Settings, settings
from mediafetch.core.errors import MediaFetchError, ValidationError
from mediafetch.services.job_registry import CommandBuilder, JobRegistry
from mediafetch.services.progress_channel import ProgressChannel

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None, command_builder: Optional[CommandBuilder] = None) -> FastAPI:
    """
    Build the application. The job registry lives for the lifetime of the app.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry_kwargs = {"command_builder": command_builder} if command_builder else {}
        registry = JobRegistry.from_settings(config, **registry_kwargs)
        app.state.registry = registry
        app.state.progress_channel = ProgressChannel(
            registry,
            poll_interval=config.PROGRESS_POLL_INTERVAL_SECONDS,
            grace_period=config.PROGRESS_GRACE_SECONDS,
        )
        await registry.start()
        logger.info(f"Workspaces under {config.WORKSPACE_ROOT}")
        try:
            yield
        finally:
            await registry.stop()

    app = FastAPI(
        title="Media Fetch API",
        description="Background media extraction with live progress",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = config

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(jobs.router, prefix=config.API_V1_PREFIX, tags=["jobs"])
    app.include_router(direct.router, tags=["direct"])

    @app.get("/")
    async def root():
        """Health check endpoint"""
        return {"status": "ok", "service": "Media Fetch API"}

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {"status": "healthy"}

    @app.exception_handler(MediaFetchError)
    async def mediafetch_exception_handler(request: Request, exc: MediaFetchError):
        """Job-scoped errors"""
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies and parameters use the same error shape"""
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [part for part in first.get("loc", ()) if part not in ("body", "query", "path", "header")]
        field = str(loc[-1]) if loc else None
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
        error = ValidationError(message, field=field)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An internal error occurred",
                "field": None
            }
        )

    return app


app = create_app()
