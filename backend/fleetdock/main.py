"""Fleetdock - Docker fleet control plane over SSH."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from fleetdock import __version__
from fleetdock.db import AsyncSessionLocal, init_db
from fleetdock.dependencies import build_services
from fleetdock.exceptions import (
    ContainerNotFoundError,
    FleetdockError,
    HostNotFoundError,
    OperationNotFoundError,
)
from fleetdock.services.metrics import collect_metrics, get_metrics
from fleetdock.services.settings_service import SettingsService
from fleetdock.utils.security import sanitize_log_message

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Filter to exclude health check endpoints from access logs
class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health", "/metrics"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting Fleetdock...")

    await init_db()
    logger.info("Database initialized")

    async with AsyncSessionLocal() as db:
        await SettingsService.init_defaults(db)
    logger.info("Default settings initialized")

    if not hasattr(app.state, "services"):
        app.state.services = build_services(AsyncSessionLocal)
    services = app.state.services

    await services.scheduler.start()
    logger.info("Background scheduler started")

    yield

    await services.scheduler.stop()
    logger.info("Shutting down Fleetdock...")


app = FastAPI(
    title="Fleetdock",
    description="Docker fleet control plane: discovery, update checks and safe updates over SSH",
    version=__version__,
    lifespan=lifespan,
)

# Same-origin only unless a dashboard on another origin is configured
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
if cors_origins:
    if "*" in cors_origins:
        logger.warning("CORS configured with wildcard (*) - not recommended for production")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Cannot use allow_credentials=True with allow_origins=["*"]
        allow_credentials="*" not in cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Last-Event-ID"],
    )
    logger.info(f"CORS enabled for: {', '.join(cors_origins)}")


@app.exception_handler(FleetdockError)
async def fleetdock_exception_handler(request: Request, exc: FleetdockError):
    """Domain errors that escape a route: unknown records are 404, the rest 400."""
    not_found = isinstance(
        exc, (HostNotFoundError, ContainerNotFoundError, OperationNotFoundError)
    )
    status_code = 404 if not_found else 400
    logger.warning(
        f"{type(exc).__name__} on {request.method} {request.url.path}: "
        f"{sanitize_log_message(str(exc))}"
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Log unhandled errors with full details and return a generic message."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {sanitize_log_message(str(exc))}",
        exc_info=True,
        extra={"path": request.url.path, "method": request.method},
    )
    if os.getenv("FLEETDOCK_DEBUG", "false").lower() == "true":
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__, "debug": True},
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please contact support if this persists."},
    )


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint, with the timing of scheduled update checks."""
    scheduler = request.app.state.services.scheduler
    next_run = scheduler.get_next_run_time()
    last_run = scheduler.last_check
    return {
        "status": "healthy",
        "service": "fleetdock",
        "update_check": {
            "next_run": next_run.isoformat() if next_run else None,
            "last_run": last_run.isoformat() if last_run else None,
        },
    }


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint."""
    async with request.app.state.services.session_factory() as db:
        await collect_metrics(db)
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


# API routes
from fleetdock.api import api_router  # noqa: E402

app.include_router(api_router)


if __name__ == "__main__":
    import subprocess
    import sys

    # Use same server as production (Granian) for consistency
    cmd = [
        "granian",
        "--interface",
        "asgi",
        "--host",
        "0.0.0.0",
        "--port",
        os.getenv("PORT", "8790"),
        "fleetdock.main:app",
    ]
    sys.exit(subprocess.run(cmd).returncode)
