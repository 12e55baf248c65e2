"""Image update checks for container records."""

import logging
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import ContainerNotFoundError
from fleetdock.models.container import Container
from fleetdock.schemas.docker import Platform
from fleetdock.services import metrics
from fleetdock.services.container_discovery import ContainerDiscovery, RefreshScope
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.registry_client import DigestResolution, RegistryClient
from fleetdock.services.ssh_executor import SSHTarget
from fleetdock.utils.error_handling import log_and_continue
from fleetdock.utils.image_ref import digest_set, normalize_digest

logger = logging.getLogger(__name__)

# Upper bound of containers checked per host in one run
MAX_CONTAINERS_PER_HOST = 200


def image_reference(container: Container) -> Optional[str]:
    if not container.image_name:
        return None
    if container.image_tag:
        return f"{container.image_name}:{container.image_tag}"
    return container.image_name


def container_platform(container: Container) -> Platform:
    """Platform of the running image, amd64/linux when unknown."""
    return Platform(
        architecture=container.platform_arch or "amd64",
        os=container.platform_os or "linux",
    )


def is_update_available(
    container: Container, remote_digest: str, equivalents: Iterable[str] = ()
) -> bool:
    """Compare registry digests with every digest known for the running image.

    ``equivalents`` are other digests of the same remote image. All digests
    are normalized to ``sha256:<hex>`` first; an update is available only
    when no remote digest matches a local one.
    """
    if normalize_digest(remote_digest) is None:
        return False
    remote = digest_set([remote_digest, *equivalents])
    local = digest_set([container.repo_digest, *(container.repo_digests or [])])
    if not local:
        return True
    return remote.isdisjoint(local)


class UpdateChecker:
    """Run the digest detection protocol for containers and record the outcome.

    A failed check only advances ``update_checked_at``; ``update_available``
    and ``remote_digest`` keep their previous values.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        hosts: HostService,
        registry: RegistryClient,
        discovery: ContainerDiscovery,
    ):
        self.session_factory = session_factory
        self.hosts = hosts
        self.registry = registry
        self.discovery = discovery

    async def _check_container(
        self,
        target: SSHTarget,
        container: Container,
        reporter: OperationReporter,
    ) -> str:
        """Check one container; returns ``update_available``, ``up_to_date``, ``error`` or ``skipped``."""
        ref = image_reference(container)
        if not ref:
            return "skipped"

        platform = container_platform(container)
        await reporter.info(
            f"Checking {ref} ({platform.architecture}/{platform.os}) for {container.name}",
            host_id=container.host_id,
        )
        try:
            resolution = await self.registry.resolve_remote_digest(target, ref, platform)
        except Exception as e:
            log_and_continue(logger, e, f"Update check crashed for {container.name}", log_level="error")
            resolution = DigestResolution(error=str(e))

        async with self.session_factory() as db:
            record = await db.get(Container, container.id)
            if record is None:
                return "skipped"
            record.update_checked_at = datetime.now(UTC)

            if resolution.error or not resolution.digest:
                await db.commit()
                metrics.update_checks_total.labels(result="error").inc()
                if resolution.rate_limited:
                    await reporter.warning(
                        f"{ref}: registry rate limit, mirrors did not help", host_id=container.host_id
                    )
                else:
                    await reporter.warning(
                        f"{ref}: check failed: {resolution.error}", host_id=container.host_id
                    )
                return "error"

            available = is_update_available(record, resolution.digest, resolution.equivalents)
            record.remote_digest = normalize_digest(resolution.digest) or resolution.digest
            record.update_available = available
            await db.commit()

        outcome = "update_available" if available else "up_to_date"
        metrics.update_checks_total.labels(result=outcome).inc()
        await reporter.info(
            f"{container.name} ({ref}): {'update available' if available else 'up to date'}",
            host_id=container.host_id,
        )
        return outcome

    async def _check_many(
        self, target: SSHTarget, containers: List[Container], reporter: OperationReporter
    ) -> Dict[str, int]:
        counts = {"updated": 0, "failed": 0, "up_to_date": 0}
        for container in containers:
            outcome = await self._check_container(target, container, reporter)
            if outcome == "update_available":
                counts["updated"] += 1
            elif outcome == "error":
                counts["failed"] += 1
            elif outcome == "up_to_date":
                counts["up_to_date"] += 1
        return counts

    async def check_host(
        self, host_id: int, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, int]:
        """Check every container with a known image on one host."""
        reporter = reporter or OperationReporter.detached()
        target = await self.hosts.get_target(host_id)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Container)
                .where(Container.host_id == host_id, Container.image_name.is_not(None))
                .order_by(Container.id)
                .limit(MAX_CONTAINERS_PER_HOST)
            )
            containers = list(result.scalars().all())

        counts = await self._check_many(target, containers, reporter)
        await reporter.info(
            f"Host {host_id}: {counts['updated']} update(s) available, "
            f"{counts['failed']} failed, {counts['up_to_date']} up to date",
            host_id=host_id,
        )
        return counts

    async def check_updates(
        self, host_id: Optional[int] = None, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, int]:
        """Check one host, or all hosts when ``host_id`` is None.

        Returns:
            ``{"updated": n}`` where n counts containers with an update available
        """
        reporter = reporter or OperationReporter.detached()
        host_ids = [host_id] if host_id is not None else [h.id for h in await self.hosts.list_hosts()]
        updated = 0
        for current in host_ids:
            try:
                updated += (await self.check_host(current, reporter))["updated"]
            except Exception as e:
                log_and_continue(logger, e, f"Update check failed on host {current}", log_level="error")
                await reporter.error(f"Update check failed on host {current}: {e}", host_id=current)
        return {"updated": updated}

    async def check_single_container_update(
        self, container_pk: int, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        """Re-inspect one container, then check its image.

        Raises:
            ContainerNotFoundError: If the record does not exist
        """
        reporter = reporter or OperationReporter.detached()
        container = await self.discovery.get_container(container_pk)
        if container is None:
            raise ContainerNotFoundError(container_pk)

        try:
            await self.discovery.refresh_status(
                container.host_id, RefreshScope(container_ids=[container.container_id]), reporter
            )
        except Exception as e:
            log_and_continue(logger, e, f"Re-inspect of {container.name} failed, checking anyway")

        container = await self.discovery.get_container(container_pk)
        if container is None:
            raise ContainerNotFoundError(container_pk)
        if not image_reference(container):
            return {"updated": 0, "container_name": container.name, "error": "missing image information"}

        target = await self.hosts.get_target(container.host_id)
        outcome = await self._check_container(target, container, reporter)
        response: Dict[str, Any] = {
            "updated": 1 if outcome == "update_available" else 0,
            "container_name": container.name,
        }
        if outcome == "error":
            response["error"] = "update check failed"
        return response

    async def check_compose_project(
        self, host_id: int, project: str, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        """Re-inspect a compose project's containers, then check each image."""
        reporter = reporter or OperationReporter.detached()
        try:
            await self.discovery.refresh_status(host_id, RefreshScope(compose_project=project), reporter)
        except Exception as e:
            log_and_continue(logger, e, f"Re-inspect of compose project {project} failed")

        async with self.session_factory() as db:
            result = await db.execute(
                select(Container)
                .where(Container.host_id == host_id, Container.compose_project == project)
                .order_by(Container.id)
            )
            containers = list(result.scalars().all())

        if not containers:
            return {"updated": 0, "project_name": project, "error": "no containers for project"}

        target = await self.hosts.get_target(host_id)
        counts = await self._check_many(target, containers, reporter)
        return {"updated": counts["updated"], "failed": counts["failed"], "project_name": project}
