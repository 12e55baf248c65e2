"""Service wiring and shared FastAPI dependencies for route handlers."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import OperationNotFoundError
from fleetdock.models.operation_log import OperationStatus
from fleetdock.services.container_discovery import ContainerDiscovery
from fleetdock.services.container_operations import ContainerOperations
from fleetdock.services.docker_adapter import DockerCommandAdapter
from fleetdock.services.event_bus import EventBus
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_log_service import OperationLogService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.registry_client import RegistryClient
from fleetdock.services.scheduler import SchedulerService
from fleetdock.services.ssh_executor import RemoteExecutor
from fleetdock.services.task_runner import TaskRunner
from fleetdock.services.update_checker import UpdateChecker
from fleetdock.services.update_engine import UpdateEngine
from fleetdock.utils.encryption import (
    EncryptionService,
    get_encryption_service,
    is_encryption_configured,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every core service, constructed once per application."""

    session_factory: async_sessionmaker
    event_bus: EventBus
    executor: RemoteExecutor
    hosts: HostService
    docker: DockerCommandAdapter
    registry: RegistryClient
    discovery: ContainerDiscovery
    checker: UpdateChecker
    engine: UpdateEngine
    operations: ContainerOperations
    log_service: OperationLogService
    task_runner: TaskRunner
    scheduler: SchedulerService


def build_services(
    session_factory: async_sessionmaker,
    executor: Optional[RemoteExecutor] = None,
    encryption: Optional[EncryptionService] = None,
    event_bus: Optional[EventBus] = None,
) -> Services:
    """Construct the service graph with explicit constructor injection."""
    executor = executor or RemoteExecutor()
    event_bus = event_bus or EventBus()
    if encryption is None and is_encryption_configured():
        encryption = get_encryption_service()
    if encryption is None:
        logger.warning(
            "FLEETDOCK_ENCRYPTION_KEY is not set; only plaintext host credentials can be used"
        )

    hosts = HostService(session_factory, executor, encryption)
    docker = DockerCommandAdapter(executor, session_factory)
    registry = RegistryClient(docker, session_factory)
    discovery = ContainerDiscovery(session_factory, hosts, docker)
    checker = UpdateChecker(session_factory, hosts, registry, discovery)
    log_service = OperationLogService(session_factory)
    return Services(
        session_factory=session_factory,
        event_bus=event_bus,
        executor=executor,
        hosts=hosts,
        docker=docker,
        registry=registry,
        discovery=discovery,
        checker=checker,
        engine=UpdateEngine(session_factory, hosts, docker, discovery),
        operations=ContainerOperations(hosts, docker, discovery),
        log_service=log_service,
        task_runner=TaskRunner(session_factory, hosts, executor, discovery, log_service, event_bus),
        scheduler=SchedulerService(session_factory, discovery, checker),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def run_as_operation(
    services: Services,
    title: str,
    action: Callable[[OperationReporter], Awaitable[Dict[str, Any]]],
    op_id: Optional[str] = None,
    execution_type: str = "action",
) -> Tuple[str, Dict[str, Any]]:
    """Run an action with its output recorded under an operation.

    A new operation is created unless ``op_id`` names an existing one. The
    operation ends COMPLETED when the result is not ``ok: False``.

    Raises:
        HTTPException: 404 if ``op_id`` does not exist
    """
    log_service = services.log_service
    if op_id is None:
        op_id = await log_service.create_operation(title, execution_type=execution_type)
    else:
        try:
            await log_service.get_operation(op_id)
        except OperationNotFoundError:
            raise HTTPException(status_code=404, detail="Operation not found")

    reporter = OperationReporter(op_id, services.event_bus, log_service)
    await log_service.update_status(op_id, OperationStatus.RUNNING)
    status = OperationStatus.ERROR
    try:
        result = await action(reporter)
        status = OperationStatus.ERROR if result.get("ok") is False else OperationStatus.COMPLETED
        return op_id, result
    finally:
        # Entries land before the terminal status so a late joiner replays everything
        try:
            await reporter.flush()
            await log_service.update_status(op_id, status)
        finally:
            await reporter.end(status)
