"""Host endpoints (connection testing)."""

import logging

from fastapi import APIRouter, Depends

from fleetdock.dependencies import Services, get_services
from fleetdock.exceptions import HostNotFoundError
from fleetdock.schemas.task import ConnectionTestResult
from fleetdock.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{host_id}/test-connection", response_model=ConnectionTestResult)
async def test_connection(host_id: int, services: Services = Depends(get_services)):
    """Run ``echo ok`` on the host over SSH."""
    try:
        return await services.hosts.test_connection(host_id)
    except HostNotFoundError as e:
        safe_error_response(logger, e, "Host not found", status_code=404, log_level="warning")
