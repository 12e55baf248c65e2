"""Compose project API endpoints."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from fleetdock.dependencies import Services, get_services, run_as_operation
from fleetdock.exceptions import HostNotFoundError
from fleetdock.schemas.container import ComposeOperationRequest
from fleetdock.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


class ComposeCheckRequest(BaseModel):
    host_id: int
    project: str
    op_id: Optional[str] = None


@router.post("/operate")
async def compose_operate(
    request: ComposeOperationRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Run down, pull, up, restart, start or stop for a whole compose project."""
    op_id, result = await run_as_operation(
        services,
        f"compose {request.operation} {request.project}",
        lambda reporter: services.operations.compose_operate(
            request.host_id, request.project, request.working_dir, request.operation, reporter
        ),
        op_id=request.op_id,
    )
    return {"op_id": op_id, **result}


@router.post("/check")
async def compose_check(
    request: ComposeCheckRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Check every container of a compose project for image updates."""
    try:
        op_id, result = await run_as_operation(
            services,
            f"Check compose project {request.project}",
            lambda reporter: services.checker.check_compose_project(
                request.host_id, request.project, reporter
            ),
            op_id=request.op_id,
        )
    except HostNotFoundError as e:
        safe_error_response(logger, e, "Host not found", status_code=404, log_level="warning")
    return {"op_id": op_id, **result}
