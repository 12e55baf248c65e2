"""Start, stop and restart of single containers, and compose project actions."""

import logging
import shlex
from typing import Any, Dict, Optional

from fleetdock.models.container import Container
from fleetdock.services.container_discovery import ContainerDiscovery, RefreshScope
from fleetdock.services.docker_adapter import DockerCommandAdapter
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.ssh_executor import ExecResult, SSHTarget
from fleetdock.utils.error_handling import operation_failure
from fleetdock.utils.validators import (
    ValidationError,
    validate_service_name,
    validate_working_dir,
)

logger = logging.getLogger(__name__)

CLI_ACTION_TIMEOUT = 120
COMPOSE_SERVICE_TIMEOUT = 300
COMPOSE_PROJECT_TIMEOUT = 600

# Compose verbs accepted by compose_operate, mapped to their argument list
COMPOSE_OPERATIONS = {
    "down": ["down"],
    "pull": ["pull"],
    "up": ["up", "-d"],
    "restart": ["restart"],
    "start": ["start"],
    "stop": ["stop"],
}


class ContainerOperations:
    """Lifecycle actions; each one ends with an advisory status refresh."""

    def __init__(
        self,
        hosts: HostService,
        docker: DockerCommandAdapter,
        discovery: ContainerDiscovery,
    ):
        self.hosts = hosts
        self.docker = docker
        self.discovery = discovery

    async def start_one(
        self, container_pk: int, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        return await self._lifecycle(container_pk, "start", reporter)

    async def stop_one(
        self, container_pk: int, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        return await self._lifecycle(container_pk, "stop", reporter)

    async def restart_one(
        self, container_pk: int, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        return await self._lifecycle(container_pk, "restart", reporter)

    async def _lifecycle(
        self, container_pk: int, action: str, reporter: Optional[OperationReporter]
    ) -> Dict[str, Any]:
        reporter = reporter or OperationReporter.detached()
        container = await self.discovery.get_container(container_pk)
        if container is None:
            return {"ok": False, "reason": "not found"}

        try:
            target = self.hosts.build_target(await self.hosts.get_host(container.host_id))
        except Exception as e:
            return operation_failure(logger, e, "no host")

        host_id = container.host_id
        use_compose = (
            action in ("start", "stop")
            and container.is_compose_managed
            and container.compose_working_dir
            and container.compose_service
        )
        try:
            if use_compose:
                result, scope = await self._compose_service_action(target, container, action, reporter)
            else:
                await reporter.info(f"docker {action} {container.name}", host_id=host_id)
                result = await self.docker.run(
                    target, [action, container.container_id], timeout=CLI_ACTION_TIMEOUT
                )
                scope = RefreshScope(container_ids=[container.container_id])
        except ValidationError as e:
            await reporter.error(f"Refusing to {action} {container.name}: {e}", host_id=host_id)
            return {"ok": False, "reason": str(e)}
        except Exception as e:
            return operation_failure(
                logger, e, f"{action} failed", additional_fields={"container": container.name}
            )

        if not result.ok:
            await reporter.error(
                f"{action} of {container.name} failed (exit {result.exit_code}): "
                f"{result.stderr.strip()[:300]}",
                host_id=host_id,
            )
        await self.discovery.advisory_refresh(host_id, scope, reporter)

        if result.ok:
            return {"ok": True, "code": result.exit_code}
        return {"ok": False, "reason": f"{action} failed", "code": result.exit_code}

    async def _compose_service_action(
        self,
        target: SSHTarget,
        container: Container,
        action: str,
        reporter: OperationReporter,
    ):
        working_dir = validate_working_dir(container.compose_working_dir)
        service = validate_service_name(container.compose_service)
        await reporter.info(
            f"docker compose {action} {service} in {working_dir}", host_id=container.host_id
        )
        result = await self._stream_shell(
            target,
            f"cd {shlex.quote(working_dir)} && docker compose {action} {shlex.quote(service)}",
            COMPOSE_SERVICE_TIMEOUT,
            reporter,
            container.host_id,
        )
        return result, RefreshScope(compose_project=container.compose_project)

    async def compose_operate(
        self,
        host_id: int,
        project: str,
        working_dir: str,
        operation: str,
        reporter: Optional[OperationReporter] = None,
    ) -> Dict[str, Any]:
        """Run a compose verb for a whole project in its working directory.

        Returns:
            ``{"ok": bool, "code": int}``, or ``{"ok": False, "reason": ...}``
            when the request is rejected before anything runs
        """
        reporter = reporter or OperationReporter.detached()
        args = COMPOSE_OPERATIONS.get(operation)
        if args is None:
            return {"ok": False, "reason": f"unsupported compose operation: {operation}"}
        try:
            working_dir = validate_working_dir(working_dir)
        except ValidationError as e:
            return {"ok": False, "reason": str(e)}

        try:
            target = await self.hosts.get_target(host_id)
        except Exception as e:
            return operation_failure(logger, e, "no host")

        command = f"cd {shlex.quote(working_dir)} && docker compose {shlex.join(args)}"
        await reporter.info(f"{project}: docker compose {' '.join(args)}", host_id=host_id)
        try:
            result = await self._stream_shell(
                target,
                command,
                COMPOSE_PROJECT_TIMEOUT,
                reporter,
                host_id,
                network=operation in ("pull", "up"),
            )
        except Exception as e:
            return operation_failure(logger, e, f"compose {operation} failed")

        if not result.ok:
            await reporter.error(
                f"{project}: compose {operation} exited with {result.exit_code}", host_id=host_id
            )
        await self.discovery.advisory_refresh(host_id, RefreshScope(compose_project=project), reporter)
        return {"ok": result.ok, "code": result.exit_code}

    async def _stream_shell(
        self,
        target: SSHTarget,
        command: str,
        timeout: int,
        reporter: OperationReporter,
        host_id: int,
        network: bool = False,
    ) -> ExecResult:
        async def on_stdout(chunk: str) -> None:
            await reporter.stdout(chunk, host_id=host_id)

        async def on_stderr(chunk: str) -> None:
            await reporter.stderr(chunk, host_id=host_id)

        return await self.docker.run_shell(
            target, command, timeout=timeout, network=network, on_stdout=on_stdout, on_stderr=on_stderr
        )
