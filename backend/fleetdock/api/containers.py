"""Container API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetdock.dependencies import Services, get_services, run_as_operation
from fleetdock.exceptions import ContainerNotFoundError, HostNotFoundError
from fleetdock.schemas.container import (
    ContainerActionRequest,
    ContainerSchema,
    HostScopeRequest,
    RefreshRequest,
)
from fleetdock.services.container_discovery import RefreshScope
from fleetdock.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=List[ContainerSchema])
async def list_containers(
    host_id: Optional[int] = None,
    update_available: Optional[bool] = None,
    is_compose_managed: Optional[bool] = None,
    q: Optional[str] = Query(default=None, max_length=200),
    services: Services = Depends(get_services),
):
    """List container records with optional filters."""
    return await services.discovery.list_containers(
        host_id=host_id,
        update_available=update_available,
        is_compose_managed=is_compose_managed,
        query=q,
    )


@router.get("/{container_pk}", response_model=ContainerSchema)
async def get_container(container_pk: int, services: Services = Depends(get_services)):
    container = await services.discovery.get_container(container_pk)
    if container is None:
        raise HTTPException(status_code=404, detail="Container not found")
    return container


@router.post("/discover")
async def discover(
    request: HostScopeRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Scan one host (or all hosts) and reconcile the container records."""
    try:
        op_id, result = await run_as_operation(
            services,
            "Discover containers",
            lambda reporter: services.discovery.discover(request.host_id, reporter),
            op_id=request.op_id,
        )
    except HostNotFoundError as e:
        safe_error_response(logger, e, "Host not found", status_code=404, log_level="warning")
    return {"op_id": op_id, **result}


@router.post("/check-updates")
async def check_updates(
    request: HostScopeRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Run the update check for one host or the whole fleet."""
    op_id, result = await run_as_operation(
        services,
        "Check container updates",
        lambda reporter: services.checker.check_updates(request.host_id, reporter),
        op_id=request.op_id,
    )
    return {"op_id": op_id, **result}


@router.post("/refresh")
async def refresh_status(
    request: RefreshRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Re-inspect selected containers or a compose project on one host."""
    scope = RefreshScope(
        container_ids=request.container_ids,
        container_names=request.container_names,
        compose_project=request.compose_project,
    )
    try:
        op_id, result = await run_as_operation(
            services,
            "Refresh container status",
            lambda reporter: services.discovery.refresh_status(request.host_id, scope, reporter),
            op_id=request.op_id,
        )
    except HostNotFoundError as e:
        safe_error_response(logger, e, "Host not found", status_code=404, log_level="warning")
    return {"op_id": op_id, **result}


@router.post("/cleanup-duplicates")
async def cleanup_duplicates(
    request: HostScopeRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    op_id, result = await run_as_operation(
        services,
        "Clean up duplicate container records",
        lambda reporter: services.discovery.cleanup_duplicates(request.host_id, reporter),
        op_id=request.op_id,
    )
    return {"op_id": op_id, **result}


@router.post("/purge")
async def purge_containers(
    request: HostScopeRequest, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Delete container records; the containers on the hosts are not touched."""
    op_id, result = await run_as_operation(
        services,
        "Purge container records",
        lambda reporter: services.discovery.purge_containers(request.host_id, reporter),
        op_id=request.op_id,
    )
    return {"op_id": op_id, **result}


@router.post("/{container_pk}/check")
async def check_container(
    container_pk: int,
    request: Optional[ContainerActionRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Re-inspect one container and check its image for an update."""
    op_id_in = request.op_id if request else None
    try:
        op_id, result = await run_as_operation(
            services,
            f"Check container {container_pk} for updates",
            lambda reporter: services.checker.check_single_container_update(container_pk, reporter),
            op_id=op_id_in,
        )
    except ContainerNotFoundError as e:
        safe_error_response(logger, e, "Container not found", status_code=404, log_level="warning")
    except HostNotFoundError as e:
        safe_error_response(logger, e, "Host not found", status_code=404, log_level="warning")
    return {"op_id": op_id, **result}


async def _container_action(
    services: Services,
    container_pk: int,
    action: str,
    request: Optional[ContainerActionRequest],
) -> Dict[str, Any]:
    container = await services.discovery.get_container(container_pk)
    if container is None:
        raise HTTPException(status_code=404, detail="Container not found")

    if action == "update":
        image_ref = request.image_ref if request else None

        def call(reporter):
            return services.engine.update_one(container_pk, image_ref=image_ref, reporter=reporter)
    else:
        method = getattr(services.operations, f"{action}_one")

        def call(reporter):
            return method(container_pk, reporter)

    op_id, result = await run_as_operation(
        services,
        f"{action.capitalize()} {container.name}",
        call,
        op_id=request.op_id if request else None,
    )
    return {"op_id": op_id, **result}


@router.post("/{container_pk}/update")
async def update_container(
    container_pk: int,
    request: Optional[ContainerActionRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Pull the latest image and recreate the container, rolling back on failure."""
    return await _container_action(services, container_pk, "update", request)


@router.post("/{container_pk}/start")
async def start_container(
    container_pk: int,
    request: Optional[ContainerActionRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _container_action(services, container_pk, "start", request)


@router.post("/{container_pk}/stop")
async def stop_container(
    container_pk: int,
    request: Optional[ContainerActionRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _container_action(services, container_pk, "stop", request)


@router.post("/{container_pk}/restart")
async def restart_container(
    container_pk: int,
    request: Optional[ContainerActionRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _container_action(services, container_pk, "restart", request)
