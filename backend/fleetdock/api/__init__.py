"""API routers for Fleetdock."""

from fastapi import APIRouter
from fleetdock.api import compose, containers, hosts, operations, tasks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(containers.router, prefix="/containers", tags=["containers"])
api_router.include_router(compose.router, prefix="/compose", tags=["compose"])
api_router.include_router(tasks.router, prefix="/tasks", tags=["tasks"])
api_router.include_router(operations.router, prefix="/operations", tags=["operations"])
api_router.include_router(hosts.router, prefix="/hosts", tags=["hosts"])

__all__ = ["api_router"]
