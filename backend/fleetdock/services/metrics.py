"""Prometheus metrics for Fleetdock."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fleetdock import __version__
from fleetdock.models.container import Container
from fleetdock.models.host import Host

# Application info
app_info = Info("fleetdock_app", "Fleetdock application information")
app_info.info({"version": __version__, "name": "Fleetdock"})

# Inventory metrics
hosts_total = Gauge("fleetdock_hosts_total", "Total number of declared hosts")
containers_total = Gauge(
    "fleetdock_containers_total", "Total number of container records"
)
containers_with_updates = Gauge(
    "fleetdock_containers_with_updates_available", "Containers with available updates"
)
containers_by_state = Gauge(
    "fleetdock_containers_by_state", "Container records grouped by state", ["state"]
)

# Remote execution metrics
remote_commands_total = Counter(
    "fleetdock_remote_commands_total",
    "Remote commands executed",
    ["mode", "outcome"],  # mode: ssh/local, outcome: ok/nonzero/transport_error/timeout
)
remote_command_duration = Histogram(
    "fleetdock_remote_command_duration_seconds",
    "Remote command duration",
    ["mode"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900],
)

# Docker / registry metrics
docker_network_retries_total = Counter(
    "fleetdock_docker_network_retries_total",
    "Docker commands retried after a transient network error",
)
registry_rate_limited_total = Counter(
    "fleetdock_registry_rate_limited_total", "Registry rate limit responses seen"
)
digest_resolutions_total = Counter(
    "fleetdock_digest_resolutions_total",
    "Remote digest resolutions by the step that produced the digest",
    ["method"],  # manifest, mirror, imagetools, skopeo, failed
)

# Update checks and updates
update_checks_total = Counter(
    "fleetdock_update_checks_total",
    "Container update checks",
    ["result"],  # up_to_date, update_available, error
)
container_updates_total = Counter(
    "fleetdock_container_updates_total",
    "Container updates",
    ["path", "result"],  # path: compose/cli, result: success/failed/rolled_back
)

# Task runner
task_runs_total = Counter(
    "fleetdock_task_runs_total", "Task runs by final status", ["status"]
)
task_duration = Histogram(
    "fleetdock_task_duration_seconds",
    "Task run total duration",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800],
)
task_targets_active = Gauge(
    "fleetdock_task_targets_active",
    "Current number of targets being executed by the task runner",
)


async def collect_metrics(db: AsyncSession) -> None:
    """Collect inventory gauges from the database.

    Args:
        db: Database session
    """
    result = await db.execute(select(func.count()).select_from(Host))
    hosts_total.set(result.scalar() or 0)

    result = await db.execute(select(func.count()).select_from(Container))
    containers_total.set(result.scalar() or 0)

    result = await db.execute(
        select(func.count()).select_from(Container).where(Container.update_available)
    )
    containers_with_updates.set(result.scalar() or 0)

    result = await db.execute(
        select(Container.state, func.count(Container.id)).group_by(Container.state)
    )
    state_counts = {state: 0 for state in ["running", "exited", "stopped", "paused", "dead"]}
    for state, count in result.fetchall():
        if state:
            state_counts[state] = count
    for state, count in state_counts.items():
        containers_by_state.labels(state=state).set(count)


def get_metrics() -> tuple[bytes, str]:
    """Render the registry in Prometheus text format.

    Returns:
        Tuple of (metrics payload, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
