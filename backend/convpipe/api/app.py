"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from convpipe import __version__, validate_dependencies
from convpipe.config import Settings, settings
from convpipe.errors import PipelineError
from convpipe.orchestrator.pipeline import PipelineCoordinator
from convpipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Create the uploads and outputs roots
        - Check the transcoder and engine are reachable (logged, not fatal)
    """
    # Startup
    logger.info("Starting audio processing server...")
    coordinator: PipelineCoordinator = app.state.coordinator
    coordinator.store.ensure_roots()
    validate_dependencies(coordinator.transcoder.command[0])
    if not coordinator.engine.is_available():
        logger.warning(f"Convolution engine not found: {coordinator.engine.command[0]}")
    logger.info("API startup complete")

    yield

    logger.info("Audio processing server shut down")


async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Render pipeline errors as structured JSON with their mapped status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )


def create_app(
    config: Optional[Settings] = None,
    coordinator: Optional[PipelineCoordinator] = None,
) -> FastAPI:
    """Build the worker application.

    Args:
        config: Settings to wire from (default: module settings singleton)
        coordinator: Pre-built coordinator, e.g. with stub tools in tests
    """
    config = config or settings

    app = FastAPI(
        title="Convolution Pipeline API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.coordinator = coordinator or PipelineCoordinator.from_settings(config)

    # CORS for the front-end dev servers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Range"],
    )

    app.include_router(router)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app


# Create FastAPI application
app = create_app()
