"""Container update workflow with rollback for CLI containers.

Compose-managed containers are updated declaratively (``compose pull`` then
``compose up -d --no-deps <service>``). CLI containers have no controller
on the host, so the engine emulates one:

1. ``docker pull <ref>``; failure leaves everything untouched.
2. Rename the running container to ``<name>_backup_<ms>`` and stop it.
3. Recreate from the captured run command under the original name.
4. Success: remove the backup. Failure: remove whatever was created under
   the original name, rename the backup back and start it again.

Updates of the same container are serialized with a per-container lock; a
concurrent request is rejected instead of queued.
"""

import asyncio
import logging
import shlex
import time
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.models.container import Container
from fleetdock.services import metrics
from fleetdock.services.container_discovery import ContainerDiscovery, RefreshScope
from fleetdock.services.docker_adapter import DockerCommandAdapter
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.ssh_executor import ExecResult, SSHTarget
from fleetdock.services.update_checker import image_reference
from fleetdock.utils.error_handling import operation_failure
from fleetdock.utils.validators import (
    ValidationError,
    validate_container_name,
    validate_service_name,
    validate_working_dir,
)

logger = logging.getLogger(__name__)

PULL_TIMEOUT = 300
RENAME_TIMEOUT = 60
RECREATE_TIMEOUT = 300
COMPOSE_TIMEOUT = 600


def backup_name(name: str) -> str:
    return f"{name}_backup_{int(time.time() * 1000)}"


class UpdateEngine:
    """Update containers in place, one update per container at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        hosts: HostService,
        docker: DockerCommandAdapter,
        discovery: ContainerDiscovery,
    ):
        self.session_factory = session_factory
        self.hosts = hosts
        self.docker = docker
        self.discovery = discovery
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = {}

    def _lock_for(self, container: Container) -> asyncio.Lock:
        key = (container.host_id, container.container_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _release_lock(self, container: Container, lock: asyncio.Lock) -> None:
        """Forget a released lock; contenders are turned away, never queued."""
        key = (container.host_id, container.container_id)
        if not lock.locked() and self._locks.get(key) is lock:
            del self._locks[key]

    async def update_one(
        self,
        container_pk: int,
        image_ref: Optional[str] = None,
        reporter: Optional[OperationReporter] = None,
    ) -> Dict[str, Any]:
        """Update one container to the latest image of its reference.

        Returns:
            ``{"ok": True}`` or ``{"ok": False, "reason": ...}``
        """
        reporter = reporter or OperationReporter.detached()
        container = await self.discovery.get_container(container_pk)
        if container is None:
            return {"ok": False, "reason": "not found"}

        lock = self._lock_for(container)
        if lock.locked():
            await reporter.warning(
                f"Update of {container.name} already in progress", host_id=container.host_id
            )
            return {"ok": False, "reason": "update already in progress"}

        try:
            async with lock:
                try:
                    target = self.hosts.build_target(await self.hosts.get_host(container.host_id))
                except Exception as e:
                    return operation_failure(logger, e, "no host")

                if container.is_compose_managed and container.compose_working_dir and container.compose_service:
                    return await self._update_compose(target, container, reporter)
                return await self._update_cli(target, container, image_ref, reporter)
        finally:
            self._release_lock(container, lock)

    # Compose path

    async def _update_compose(
        self, target: SSHTarget, container: Container, reporter: OperationReporter
    ) -> Dict[str, Any]:
        host_id = container.host_id
        try:
            working_dir = validate_working_dir(container.compose_working_dir)
            service = validate_service_name(container.compose_service)
        except ValidationError as e:
            await reporter.error(f"Refusing compose update of {container.name}: {e}", host_id=host_id)
            return {"ok": False, "reason": str(e)}

        try:
            prefix = f"cd {shlex.quote(working_dir)} && docker compose"
            await reporter.info(f"Pulling compose service {service}", host_id=host_id)
            pull = await self._shell(
                target, f"{prefix} pull {shlex.quote(service)}", COMPOSE_TIMEOUT, reporter, host_id, network=True
            )
            if not pull.ok:
                metrics.container_updates_total.labels(path="compose", result="failed").inc()
                await reporter.error(f"compose pull failed (exit {pull.exit_code})", host_id=host_id)
                return {"ok": False, "reason": "pull failed", "code": pull.exit_code}

            up = await self._shell(
                target,
                f"{prefix} up -d --no-deps {shlex.quote(service)}",
                COMPOSE_TIMEOUT,
                reporter,
                host_id,
            )
        except Exception as e:
            metrics.container_updates_total.labels(path="compose", result="failed").inc()
            return operation_failure(logger, e, "compose update failed")

        if up.ok:
            await self._clear_update_flag(container.id)
            metrics.container_updates_total.labels(path="compose", result="success").inc()
        else:
            metrics.container_updates_total.labels(path="compose", result="failed").inc()
            await reporter.error(f"compose up failed (exit {up.exit_code})", host_id=host_id)

        await self.discovery.advisory_refresh(
            host_id, RefreshScope(compose_project=container.compose_project), reporter
        )
        if up.ok:
            return {"ok": True, "code": up.exit_code}
        return {"ok": False, "reason": "compose up failed", "code": up.exit_code}

    # CLI path

    async def _update_cli(
        self,
        target: SSHTarget,
        container: Container,
        image_ref: Optional[str],
        reporter: OperationReporter,
    ) -> Dict[str, Any]:
        host_id = container.host_id
        if not container.run_command:
            await reporter.error(
                f"{container.name} has no captured run command; rediscover the host first",
                host_id=host_id,
            )
            return {"ok": False, "reason": "missing runCommand"}

        ref = image_ref or image_reference(container)
        if not ref:
            return {"ok": False, "reason": "no image"}

        try:
            name = validate_container_name(container.name)
        except ValidationError as e:
            return {"ok": False, "reason": str(e)}

        # 1. pull, nothing mutated yet
        try:
            await reporter.info(f"Pulling {ref}", host_id=host_id)
            pull = await self.docker.run_with_retry(target, ["pull", ref], timeout=PULL_TIMEOUT)
        except Exception as e:
            metrics.container_updates_total.labels(path="cli", result="failed").inc()
            return operation_failure(logger, e, "pull failed")
        if not pull.ok:
            metrics.container_updates_total.labels(path="cli", result="failed").inc()
            await reporter.error(
                f"docker pull {ref} failed (exit {pull.exit_code}): {pull.stderr.strip()[:300]}",
                host_id=host_id,
            )
            return {"ok": False, "reason": "pull failed"}

        backup = backup_name(name)
        renamed = False
        was_running = (container.state or "") in ("running", "restarting")
        try:
            # 2. backup
            rename = await self.docker.run(
                target, ["rename", container.container_id, backup], timeout=RENAME_TIMEOUT
            )
            if not rename.ok:
                metrics.container_updates_total.labels(path="cli", result="failed").inc()
                await reporter.error(
                    f"Renaming {name} to {backup} failed: {rename.stderr.strip()[:300]}",
                    host_id=host_id,
                )
                return {"ok": False, "reason": "backup failed"}
            renamed = True
            await reporter.info(f"Renamed {name} to {backup}", host_id=host_id)

            stop = await self.docker.run(target, ["stop", backup], timeout=RECREATE_TIMEOUT)
            if not stop.ok:
                await reporter.error(f"Stopping {backup} failed, restoring", host_id=host_id)
                await self._rollback(target, name, backup, was_running, reporter, host_id)
                metrics.container_updates_total.labels(path="cli", result="rolled_back").inc()
                return {"ok": False, "reason": "backup failed"}

            # 3. recreate
            recreate = await self._shell(
                target, container.run_command, RECREATE_TIMEOUT, reporter, host_id
            )
            if not recreate.ok:
                await reporter.error(
                    f"Recreating {name} failed (exit {recreate.exit_code}), rolling back",
                    host_id=host_id,
                )
                await self._rollback(target, name, backup, was_running, reporter, host_id)
                metrics.container_updates_total.labels(path="cli", result="rolled_back").inc()
                return {"ok": False, "reason": "recreate failed, rolled back"}

            # 4. cleanup
            cleanup = await self.docker.run(target, ["rm", "-f", backup], timeout=RENAME_TIMEOUT)
            if not cleanup.ok:
                await reporter.warning(
                    f"Could not remove backup container {backup}: {cleanup.stderr.strip()[:200]}",
                    host_id=host_id,
                )
            await self._clear_update_flag(container.id)
        except Exception as e:
            if renamed:
                await self._rollback(target, name, backup, was_running, reporter, host_id)
            metrics.container_updates_total.labels(path="cli", result="rolled_back").inc()
            return operation_failure(logger, e, "exception occurred, rolled back")

        metrics.container_updates_total.labels(path="cli", result="success").inc()
        await reporter.info(f"{name} updated to {ref}", host_id=host_id)
        await self.discovery.advisory_refresh(
            host_id, RefreshScope(container_names=[name]), reporter
        )
        return {"ok": True}

    async def _rollback(
        self,
        target: SSHTarget,
        name: str,
        backup: str,
        restart: bool,
        reporter: OperationReporter,
        host_id: int,
    ) -> bool:
        """Remove anything created under ``name`` and restore the backup.

        Returns:
            True if the backup is back under its original name
        """
        try:
            await self.docker.run(target, ["rm", "-f", name], timeout=RENAME_TIMEOUT)
            restore = await self.docker.run(target, ["rename", backup, name], timeout=RENAME_TIMEOUT)
            if not restore.ok:
                await reporter.error(
                    f"Rollback failed: could not rename {backup} back to {name}: "
                    f"{restore.stderr.strip()[:300]}",
                    host_id=host_id,
                )
                return False
            if restart:
                start = await self.docker.run(target, ["start", name], timeout=RECREATE_TIMEOUT)
                if not start.ok:
                    await reporter.warning(f"Restored {name} but it did not start", host_id=host_id)
            await reporter.info(f"Rolled back to the original {name}", host_id=host_id)
            return True
        except Exception as e:
            logger.error(f"Rollback of {name} raised {type(e).__name__}: {e}", exc_info=True)
            await reporter.error(f"Rollback of {name} failed: {e}", host_id=host_id)
            return False

    async def _shell(
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

    async def _clear_update_flag(self, container_pk: int) -> None:
        async with self.session_factory() as db:
            record = await db.get(Container, container_pk)
            if record is not None:
                record.update_available = False
                await db.commit()
