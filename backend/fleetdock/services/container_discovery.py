"""Container discovery and reconciliation.

Reads ground truth from ``docker ps -a`` / ``docker inspect`` on a host and
converges the local container records to it. Containers that disappear from
the CLI output are marked stopped, never deleted; deletion only happens in
the explicit duplicate cleanup and purge operations.
"""

import logging
import re
import shlex
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetdock.exceptions import CommandExecutionError
from fleetdock.models.container import Container
from fleetdock.schemas.docker import ContainerInspect
from fleetdock.services.docker_adapter import DockerCommandAdapter
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.ssh_executor import SSHTarget
from fleetdock.utils.error_handling import log_and_continue
from fleetdock.utils.image_ref import normalize_digest, resolve_image_name_tag
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

LABEL_PROJECT = "com.docker.compose.project"
LABEL_SERVICE = "com.docker.compose.service"
LABEL_WORKING_DIR = "com.docker.compose.project.working_dir"
LABEL_CONFIG_FILES = "com.docker.compose.project.config_files"

STATUS_KEYWORDS = ("Up", "Exited", "Created")
RUNNING_STATES = ("running", "restarting", "starting")

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


@dataclass
class PsRow:
    """One line of ``docker ps -a`` table output."""

    container_id: str
    name: str
    image: str = ""
    status: str = ""
    state: str = "unknown"


@dataclass
class RefreshScope:
    """Targets of a narrow status refresh on one host."""

    container_ids: List[str] = field(default_factory=list)
    container_names: List[str] = field(default_factory=list)
    compose_project: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.container_ids or self.container_names or self.compose_project)


def parse_ps_line(line: str) -> Optional[PsRow]:
    """Parse one ``docker ps -a`` line.

    The first token is the container ID and the last the name; the status is
    recovered by scanning from the fifth token for ``Up``/``Exited``/``Created``.
    Lines with fewer than seven tokens fall back to a two-token parse.
    """
    parts = line.strip().split()
    if not parts or parts[0] == "CONTAINER":
        return None

    if len(parts) >= 7:
        status = ""
        for i in range(4, len(parts) - 1):
            if any(keyword in parts[i] for keyword in STATUS_KEYWORDS):
                status = " ".join(parts[i:-1])
                break
        return PsRow(
            container_id=parts[0],
            name=parts[-1],
            image=parts[1],
            status=status,
            state="running" if "Up" in status else "exited",
        )

    if len(parts) >= 2:
        return PsRow(container_id=parts[0], name=parts[-1], image=parts[1])
    return None


def parse_ps_output(text: str) -> List[PsRow]:
    """Parse ``docker ps -a`` output, skipping the header and bad lines."""
    rows = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            row = parse_ps_line(line)
        except (IndexError, ValueError) as e:
            logger.debug(f"Skipping unparseable ps line: {sanitize_log_message(line[:80])} ({e})")
            continue
        if row:
            rows.append(row)
    return rows


def parse_docker_time(value: Optional[str]) -> Optional[datetime]:
    """Parse docker's RFC 3339 timestamps (nanosecond precision, ``Z`` suffix).

    Docker reports ``0001-01-01T00:00:00Z`` for containers that never started;
    that yields None.
    """
    if not value or value.startswith("0001-01-01"):
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable docker timestamp: {sanitize_log_message(value)}")
        return None


def _naive_utc(value: Optional[datetime]) -> datetime:
    """Comparable timestamp; SQLite hands datetimes back without tzinfo."""
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def generate_run_command(detail: ContainerInspect, name: Optional[str] = None) -> Optional[str]:
    """Synthesize a ``docker run`` invocation that recreates a CLI container.

    Covers name, restart policy, port bindings, bind/volume mounts (with
    read-only flag), non-system env vars, non-default network, workdir, user,
    non-compose labels, image and command args. Every argument is
    shell-quoted.
    """
    config = detail.config
    host_config = detail.host_config
    image = config.image
    if not image:
        return None

    parts = ["docker", "run", "-d"]
    name = name or detail.bare_name
    if name:
        parts += ["--name", name]

    policy = host_config.restart_policy
    if policy and policy.name:
        if policy.name == "on-failure" and policy.maximum_retry_count:
            parts += ["--restart", f"on-failure:{policy.maximum_retry_count}"]
        elif policy.name != "no":
            parts += ["--restart", policy.name]

    for container_port, bindings in (host_config.port_bindings or {}).items():
        if not bindings:
            continue
        binding = bindings[0]
        if not binding.host_port:
            continue
        if binding.host_ip and binding.host_ip != "0.0.0.0":
            parts += ["-p", f"{binding.host_ip}:{binding.host_port}:{container_port}"]
        else:
            parts += ["-p", f"{binding.host_port}:{container_port}"]

    for mount in detail.mounts:
        suffix = "" if mount.rw else ":ro"
        if mount.type == "bind" and mount.source:
            parts += ["-v", f"{mount.source}:{mount.destination}{suffix}"]
        elif mount.type == "volume" and mount.name:
            parts += ["-v", f"{mount.name}:{mount.destination}{suffix}"]

    for env in config.env:
        if not env.startswith(("PATH=", "HOSTNAME=")):
            parts += ["-e", env]

    network_mode = host_config.network_mode
    if network_mode and network_mode not in ("default", "bridge"):
        parts += ["--network", network_mode]

    if config.working_dir:
        parts += ["-w", config.working_dir]
    if config.user:
        parts += ["-u", config.user]

    for key, value in config.labels.items():
        if isinstance(value, str) and not key.startswith("com.docker.compose."):
            parts += ["--label", f"{key}={value}"]

    parts.append(image)
    parts += list(config.cmd or [])
    return shlex.join(parts)


def compose_identity(labels: Dict[str, Any], host_id: int) -> Dict[str, Any]:
    """Compose metadata derived purely from container labels."""
    project = labels.get(LABEL_PROJECT) or None
    service = labels.get(LABEL_SERVICE) or None
    working_dir = labels.get(LABEL_WORKING_DIR) or None
    config_files = labels.get(LABEL_CONFIG_FILES)

    folder_name = None
    if working_dir:
        segments = [s for s in re.split(r"[/\\]+", working_dir) if s]
        folder_name = segments[-1] if segments else None
    folder_name = folder_name or project

    return {
        "is_compose_managed": bool(project and service),
        "compose_project": project,
        "compose_service": service,
        "compose_working_dir": working_dir,
        "compose_folder_name": folder_name,
        "compose_config_files": str(config_files).split(",") if config_files else [],
        # keyed by project, not working dir, so path variants don't split a group
        "compose_group_key": f"{host_id}::compose::{project}" if project else None,
    }


class ContainerDiscovery:
    """Discovery, targeted refresh and record hygiene for containers."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        hosts: HostService,
        docker: DockerCommandAdapter,
    ):
        self.session_factory = session_factory
        self.hosts = hosts
        self.docker = docker

    # Record building

    async def build_record(
        self,
        target: SSHTarget,
        host_id: int,
        detail: Optional[ContainerInspect],
        row: Optional[PsRow] = None,
    ) -> Dict[str, Any]:
        """Column values for a container from its inspect record and ps row."""
        if detail is None and row is None:
            raise ValueError("build_record needs an inspect record or a ps row")

        full_id = detail.id if detail else row.container_id
        labels = dict(detail.config.labels) if detail else {}
        config_image = (detail.config.image if detail else None) or (row.image if row else None)

        image_info = None
        if detail and detail.image:
            image_info = await self.docker.inspect_image(target, detail.image)
        if image_info is None and config_image:
            image_info = await self.docker.inspect_image(target, config_image)

        image_name, image_tag = resolve_image_name_tag(
            image_info.repo_tags if image_info else [], config_image
        )

        # running image digest: the container's Image field is the image ID
        running_digest = normalize_digest(detail.image if detail else None)
        if running_digest is None and image_info is not None:
            running_digest = normalize_digest(image_info.id)
        repo_digests = list(image_info.repo_digests) if image_info else []
        if running_digest is None and repo_digests:
            running_digest = normalize_digest(repo_digests[0])

        if row and row.state != "unknown":
            state = row.state
        elif detail:
            state = detail.state.normalized()
        else:
            state = row.state
        status = (row.status if row else "") or state

        record: Dict[str, Any] = {
            "container_id": full_id,
            "name": (row.name if row else None) or (detail.bare_name if detail else full_id[:12]),
            "state": state,
            "status": status,
            "image_name": image_name,
            "image_tag": image_tag,
            "repo_digest": running_digest,
            "repo_digests": repo_digests,
            "platform_arch": image_info.architecture if image_info else None,
            "platform_os": image_info.os if image_info else None,
            "restart_count": detail.restart_count if detail else 0,
            "started_at": parse_docker_time(detail.state.started_at) if detail else None,
            "ports": dict(detail.network_settings.ports) if detail else {},
            "mounts": [m.model_dump(by_alias=True) for m in detail.mounts] if detail else [],
            "networks": dict(detail.network_settings.networks) if detail else {},
            "labels": labels,
        }
        record.update(compose_identity(labels, host_id))
        if not record["compose_project"] and detail is not None:
            record["run_command"] = generate_run_command(detail, record["name"])
        return record

    async def _upsert(
        self, db: AsyncSession, host_id: int, ids: Iterable[str], record: Dict[str, Any]
    ) -> Container:
        """Update the row matching any of ``ids`` (full/short/raw) or create one.

        Sibling rows under the other IDs of the same container are deleted.
        """
        full_id = record["container_id"]
        candidate_ids = list(dict.fromkeys([full_id, full_id[:12], *ids]))
        result = await db.execute(
            select(Container)
            .where(Container.host_id == host_id, Container.container_id.in_(candidate_ids))
            .order_by(Container.id)
        )
        existing = result.scalars().first()

        if existing is not None:
            for key, value in record.items():
                setattr(existing, key, value)
            await db.execute(
                delete(Container).where(
                    Container.host_id == host_id,
                    Container.container_id.in_(candidate_ids),
                    Container.id != existing.id,
                )
            )
            return existing

        container = Container(host_id=host_id, created_at=datetime.now(UTC), **record)
        db.add(container)
        return container

    # Discovery

    async def discover_on_host(
        self, host_id: int, reporter: Optional[OperationReporter] = None
    ) -> int:
        """Scan one host and reconcile its container records.

        Returns:
            Number of containers upserted

        Raises:
            HostNotFoundError: If the host does not exist
            CommandExecutionError: If ``docker ps`` could not be run; no
                records are touched in that case
        """
        reporter = reporter or OperationReporter.detached()
        host = await self.hosts.get_host(host_id)
        target = self.hosts.build_target(host)

        ps = await self.docker.ps_all(target)
        if not ps.ok:
            await reporter.error(
                f"[{host.address}] docker ps failed (exit {ps.exit_code}): "
                f"{(ps.transport_error or ps.stderr).strip()[:300]}",
                host_id=host_id,
            )
            ps.raise_for_transport()
            raise CommandExecutionError(
                f"docker ps failed on {host.address} (exit {ps.exit_code})", ps.exit_code, ps.stderr
            )

        rows = parse_ps_output(ps.stdout)
        details = await self.docker.inspect_containers(target, [r.container_id for r in rows])
        detail_by_id: Dict[str, ContainerInspect] = {}
        for detail in details:
            detail_by_id[detail.id] = detail
            detail_by_id[detail.short_id] = detail

        records = []
        for row in rows:
            detail = detail_by_id.get(row.container_id)
            record = await self.build_record(target, host_id, detail, row)
            records.append((row, record))
            await reporter.info(
                f"[{host.address}] found {record['name']} ({record['container_id'][:12]}) "
                f"{record['image_name']}:{record['image_tag']}",
                host_id=host_id,
            )

        seen_ids: set[str] = set()
        async with self.session_factory() as db:
            for row, record in records:
                full_id = record["container_id"]
                seen_ids.update({full_id, full_id[:12], row.container_id})
                await self._upsert(db, host_id, [row.container_id], record)
            await db.flush()

            missing = await self._mark_missing_cli_stopped(db, host_id, seen_ids)
            await db.commit()

        if missing:
            await reporter.info(
                f"[{host.address}] {missing} container(s) no longer listed, marked stopped",
                host_id=host_id,
            )
        logger.info(f"Discovered {len(records)} containers on host {host_id}")
        return len(records)

    @staticmethod
    async def _mark_missing_cli_stopped(db: AsyncSession, host_id: int, seen_ids: set[str]) -> int:
        conditions = [Container.host_id == host_id, Container.is_compose_managed.is_(False)]
        if seen_ids:
            conditions.append(Container.container_id.not_in(seen_ids))
        result = await db.execute(select(Container).where(*conditions))
        missing = list(result.scalars().all())
        for container in missing:
            container.state = "stopped"
            container.status = "stopped"
            container.started_at = None
        return len(missing)

    async def discover(
        self, host_id: Optional[int] = None, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, Any]:
        """Discover one host, or all hosts when ``host_id`` is None.

        Runs the duplicate cleanup for the scanned host(s) afterwards. A host
        that fails is reported and the scan moves on; the result is then
        ``ok: False`` and lists the failed hosts.

        Raises:
            HostNotFoundError: If an explicit ``host_id`` does not exist
        """
        reporter = reporter or OperationReporter.detached()
        if host_id is not None:
            host_ids = [(await self.hosts.get_host(host_id)).id]
        else:
            host_ids = [h.id for h in await self.hosts.list_hosts()]

        total = 0
        failed: List[Dict[str, Any]] = []
        for current in host_ids:
            try:
                total += await self.discover_on_host(current, reporter)
            except Exception as e:
                log_and_continue(logger, e, f"Discovery failed on host {current}", log_level="error")
                await reporter.error(f"Discovery failed on host {current}: {e}", host_id=current)
                failed.append({"host_id": current, "reason": str(e)})

        try:
            await self.cleanup_duplicates(host_id, reporter)
        except Exception as e:
            log_and_continue(logger, e, "Duplicate cleanup after discovery failed")

        if failed:
            return {
                "ok": False,
                "reason": f"discovery failed on {len(failed)} of {len(host_ids)} host(s)",
                "upserted": total,
                "failed": failed,
            }
        return {"ok": True, "upserted": total}

    # Targeted refresh

    async def refresh_status(
        self,
        host_id: int,
        scope: RefreshScope,
        reporter: Optional[OperationReporter] = None,
    ) -> Dict[str, Any]:
        """Re-inspect a narrow set of containers instead of rescanning the host.

        Returns:
            ``{"updated": int, "not_found": [container ids]}``
        """
        reporter = reporter or OperationReporter.detached()
        if scope.is_empty:
            return {"updated": 0, "not_found": []}

        host = await self.hosts.get_host(host_id)
        target = self.hosts.build_target(host)

        async with self.session_factory() as db:
            conditions = []
            if scope.container_ids:
                short_ids = [cid[:12] for cid in scope.container_ids]
                conditions.append(Container.container_id.in_([*scope.container_ids, *short_ids]))
            if scope.container_names:
                conditions.append(Container.name.in_(scope.container_names))
            if scope.compose_project:
                conditions.append(Container.compose_project == scope.compose_project)
            result = await db.execute(
                select(Container).where(Container.host_id == host_id, or_(*conditions))
            )
            rows = list(result.scalars().all())

        inspect_targets = [*scope.container_ids, *scope.container_names]
        project_rows = [
            r for r in rows if scope.compose_project and r.compose_project == scope.compose_project
        ]
        project_row_ids = {r.id for r in project_rows}
        project_down = False

        if scope.compose_project:
            project = await self.docker.compose_project_status(target, scope.compose_project)
            project_down = project is None or not project.is_running
            if project_down:
                await reporter.info(
                    f"[{host.address}] compose project {scope.compose_project} is not running",
                    host_id=host_id,
                )
            # containers recreated by compose up carry new IDs
            inspect_targets += await self.docker.ps_by_compose_project(target, scope.compose_project)
            inspect_targets += [r.container_id for r in project_rows]

        inspect_targets = list(dict.fromkeys(t for t in inspect_targets if t))
        details = await self.docker.inspect_containers(target, inspect_targets) if inspect_targets else []

        by_id = {d.id: d for d in details}
        by_short = {d.short_id: d for d in details}
        by_name = {d.bare_name: d for d in details}

        updated = 0
        not_found: List[str] = []
        matched_ids: set[str] = set()

        async with self.session_factory() as db:
            for row in rows:
                container = await db.get(Container, row.id)
                if container is None:
                    continue
                if project_down and row.id in project_row_ids:
                    self._mark_stopped(container)
                detail = (
                    by_id.get(container.container_id)
                    or by_short.get(container.container_id[:12])
                    or by_name.get(container.name)
                )
                if detail is None:
                    self._mark_stopped(container)
                    not_found.append(container.container_id)
                    continue
                self._apply_detail(container, detail)
                matched_ids.add(detail.id)
                updated += 1

            # live project containers without a record yet
            if scope.compose_project:
                for detail in details:
                    if detail.id in matched_ids:
                        continue
                    if detail.config.labels.get(LABEL_PROJECT) != scope.compose_project:
                        continue
                    record = await self.build_record(target, host_id, detail)
                    await self._upsert(db, host_id, [detail.short_id], record)
                    updated += 1

            await db.commit()

        logger.info(
            f"Refreshed {updated} container(s) on host {host_id}, {len(not_found)} not found"
        )
        return {"updated": updated, "not_found": not_found}

    async def advisory_refresh(
        self,
        host_id: int,
        scope: RefreshScope,
        reporter: Optional[OperationReporter] = None,
    ) -> Optional[Dict[str, Any]]:
        """Follow-up refresh after an action.

        The action's own result is authoritative; a failing refresh is logged
        and reported, and None is returned.
        """
        reporter = reporter or OperationReporter.detached()
        try:
            return await self.refresh_status(host_id, scope, reporter)
        except Exception as e:
            log_and_continue(logger, e, f"Status refresh after action failed on host {host_id}")
            await reporter.warning(f"Status refresh failed: {e}", host_id=host_id)
            return None

    @staticmethod
    def _mark_stopped(container: Container) -> None:
        container.state = "stopped"
        container.status = "stopped"
        container.started_at = None

    @staticmethod
    def _apply_detail(container: Container, detail: ContainerInspect) -> None:
        status = detail.state.normalized()
        container.container_id = detail.id
        container.state = status
        container.status = status
        container.started_at = parse_docker_time(detail.state.started_at)
        container.restart_count = detail.restart_count
        container.ports = dict(detail.network_settings.ports)
        container.networks = dict(detail.network_settings.networks)
        container.mounts = [m.model_dump(by_alias=True) for m in detail.mounts]
        container.labels = dict(detail.config.labels)
        digest = normalize_digest(detail.image)
        if digest:
            container.repo_digest = digest

    async def refresh_running_status_all_hosts(self) -> int:
        """Refresh every container recorded as running, grouped per host.

        Returns:
            Number of containers refreshed
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Container.host_id, Container.container_id).where(
                    or_(
                        Container.state.in_(RUNNING_STATES),
                        Container.status.like("%Up%"),
                    )
                )
            )
            grouped: Dict[int, List[str]] = defaultdict(list)
            for host_id, container_id in result.all():
                grouped[host_id].append(container_id)

        refreshed = 0
        for host_id, container_ids in grouped.items():
            try:
                outcome = await self.refresh_status(host_id, RefreshScope(container_ids=container_ids))
                refreshed += outcome["updated"]
            except Exception as e:
                log_and_continue(logger, e, f"Running status refresh failed for host {host_id}")
        return refreshed

    # Record hygiene

    async def cleanup_duplicates(
        self, host_id: Optional[int] = None, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, int]:
        """Enforce the uniqueness rules for one host or all hosts.

        1. Rows of the same container (same ID, or short ID and full ID of the
           same container) collapse to the most recently created row, which
           keeps the full ID.
        2. Rows sharing a name collapse to the one with the latest
           ``started_at`` (``created_at`` when never started).

        Idempotent.
        """
        reporter = reporter or OperationReporter.detached()
        removed = 0
        async with self.session_factory() as db:
            query = select(Container)
            if host_id is not None:
                query = query.where(Container.host_id == host_id)
            result = await db.execute(query.order_by(Container.host_id, Container.id))
            by_host: Dict[int, List[Container]] = defaultdict(list)
            for container in result.scalars().all():
                by_host[container.host_id].append(container)

            for current_host, containers in by_host.items():
                deleted: set[int] = set()

                by_container: Dict[str, List[Container]] = defaultdict(list)
                for container in containers:
                    by_container[container.container_id[:12]].append(container)
                for group in by_container.values():
                    if len(group) < 2:
                        continue
                    keep = max(group, key=lambda c: (_naive_utc(c.created_at), c.id))
                    full_id = max((c.container_id for c in group), key=len)
                    for container in group:
                        if container is not keep:
                            deleted.add(container.id)
                            await db.delete(container)
                    keep.container_id = full_id

                by_name: Dict[str, List[Container]] = defaultdict(list)
                for container in containers:
                    if container.id not in deleted:
                        by_name[container.name].append(container)
                for group in by_name.values():
                    if len(group) < 2:
                        continue
                    keep = max(
                        group,
                        key=lambda c: (_naive_utc(c.started_at or c.created_at), c.id),
                    )
                    for container in group:
                        if container is not keep:
                            deleted.add(container.id)
                            await db.delete(container)

                if deleted:
                    await reporter.info(
                        f"Removed {len(deleted)} duplicate container record(s) on host {current_host}",
                        host_id=current_host,
                    )
                removed += len(deleted)

            await db.commit()

        if removed:
            logger.info(f"Duplicate cleanup removed {removed} container record(s)")
        return {"removed": removed}

    async def purge_containers(
        self, host_id: Optional[int] = None, reporter: Optional[OperationReporter] = None
    ) -> Dict[str, int]:
        """Delete all container records of one host, or of every host."""
        reporter = reporter or OperationReporter.detached()
        async with self.session_factory() as db:
            statement = delete(Container)
            if host_id is not None:
                statement = statement.where(Container.host_id == host_id)
            result = await db.execute(statement)
            await db.commit()
        deleted = result.rowcount or 0
        scope = f"host {host_id}" if host_id is not None else "all hosts"
        await reporter.info(f"Purged {deleted} container record(s) for {scope}", host_id=host_id)
        return {"deleted": deleted}

    # Queries

    async def get_container(self, container_pk: int) -> Optional[Container]:
        async with self.session_factory() as db:
            return await db.get(Container, container_pk)

    async def list_containers(
        self,
        host_id: Optional[int] = None,
        update_available: Optional[bool] = None,
        is_compose_managed: Optional[bool] = None,
        query: Optional[str] = None,
    ) -> List[Container]:
        """Container records filtered by host, update flag, compose management and text."""
        async with self.session_factory() as db:
            statement = select(Container)
            if host_id is not None:
                statement = statement.where(Container.host_id == host_id)
            if update_available is not None:
                statement = statement.where(Container.update_available.is_(update_available))
            if is_compose_managed is not None:
                statement = statement.where(Container.is_compose_managed.is_(is_compose_managed))
            if query:
                pattern = f"%{query}%"
                statement = statement.where(
                    or_(Container.name.ilike(pattern), Container.image_name.ilike(pattern))
                )
            result = await db.execute(statement.order_by(Container.host_id, Container.name))
            return list(result.scalars().all())
