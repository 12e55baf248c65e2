"""Fleet task API endpoints."""

import logging

from fastapi import APIRouter, Depends, status

from fleetdock.dependencies import Services, get_services
from fleetdock.schemas.task import DiscoverTaskCreate, TaskCreate, TaskStarted
from fleetdock.services.task_runner import DISCOVER_COMMAND

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=TaskStarted, status_code=status.HTTP_202_ACCEPTED)
async def create_task(request: TaskCreate, services: Services = Depends(get_services)):
    """Start a command on the given hosts; follow it through the operation stream."""
    op_id = await services.task_runner.start(
        request.command, request.host_ids, request.concurrency, title=request.title
    )
    return TaskStarted(op_id=op_id)


@router.post("/discover", response_model=TaskStarted, status_code=status.HTTP_202_ACCEPTED)
async def discover_task(request: DiscoverTaskCreate, services: Services = Depends(get_services)):
    """Run container discovery on the given hosts through the task runner."""
    op_id = await services.task_runner.start(
        DISCOVER_COMMAND, request.host_ids, request.concurrency
    )
    return TaskStarted(op_id=op_id)
