"""Fleet-wide command execution with a bounded worker pool."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.models.operation_log import OperationStatus
from fleetdock.services import metrics
from fleetdock.services.container_discovery import ContainerDiscovery
from fleetdock.services.event_bus import EventBus
from fleetdock.services.host_service import HostService
from fleetdock.services.operation_log_service import OperationLogService
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.settings_service import SettingsService
from fleetdock.services.ssh_executor import ExecOptions, RemoteExecutor
from fleetdock.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

# Runs container discovery on each target instead of a shell command
DISCOVER_COMMAND = "__discover_containers__"

TASK_SUCCEEDED = "succeeded"
TASK_FAILED = "failed"

MAX_CONCURRENCY = 100


@dataclass
class TargetOutcome:
    host_id: int
    status: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class TaskResult:
    op_id: str
    status: str
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TASK_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_id": self.op_id,
            "status": self.status,
            "outcomes": [asdict(o) for o in self.outcomes],
        }


class TaskRunner:
    """Run one command on many hosts through a fixed pool of workers.

    Every target is executed to completion by one worker before that worker
    takes the next target off the shared queue. Output chunks are published
    live on ``task:<opId>`` tagged with the host id and persisted in one batch
    when the run ends. The run fails if any target fails.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        hosts: HostService,
        executor: RemoteExecutor,
        discovery: ContainerDiscovery,
        log_service: OperationLogService,
        event_bus: EventBus,
    ):
        self.session_factory = session_factory
        self.hosts = hosts
        self.executor = executor
        self.discovery = discovery
        self.log_service = log_service
        self.event_bus = event_bus
        self._background: Set[asyncio.Task] = set()

    async def _settings(self) -> tuple[int, int]:
        async with self.session_factory() as db:
            concurrency = await SettingsService.get_int_clamped(db, "ssh_concurrency", 30, 10, 100)
            timeout = await SettingsService.get_int_clamped(db, "command_timeout_seconds", 100, 10, 900)
        return concurrency, timeout

    async def start(
        self,
        command: str,
        host_ids: List[int],
        concurrency: Optional[int] = None,
        title: Optional[str] = None,
    ) -> str:
        """Create the operation and run it in the background.

        Returns:
            The operation id, usable for log replay and live streaming
        """
        op_id = await self.log_service.create_operation(
            title or self._title(command), command=command, targets=host_ids
        )
        task = asyncio.create_task(self.run(command, host_ids, concurrency, op_id=op_id))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return op_id

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Background task run was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task run failed: {type(exc).__name__}: "
                f"{sanitize_log_message(str(exc))}",
                exc_info=exc,
            )

    async def run(
        self,
        command: str,
        host_ids: List[int],
        concurrency: Optional[int] = None,
        op_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> TaskResult:
        """Execute ``command`` on every host and wait for all targets."""
        if op_id is None:
            op_id = await self.log_service.create_operation(
                title or self._title(command), command=command, targets=host_ids
            )
        reporter = OperationReporter(op_id, self.event_bus, self.log_service)
        started = time.monotonic()
        outcomes: List[TargetOutcome] = []
        status = TASK_FAILED

        try:
            configured, timeout = await self._settings()
            workers = max(
                1, min(concurrency if concurrency is not None else configured, MAX_CONCURRENCY)
            )

            await self.log_service.update_status(op_id, OperationStatus.RUNNING)
            display = "container discovery" if command == DISCOVER_COMMAND else command
            await reporter.info(
                f"Task started: {display} on {len(host_ids)} host(s), "
                f"concurrency {workers}, timeout {timeout}s"
            )

            queue: asyncio.Queue[int] = asyncio.Queue()
            for host_id in host_ids:
                queue.put_nowait(host_id)

            async def worker() -> None:
                while True:
                    try:
                        host_id = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    metrics.task_targets_active.inc()
                    try:
                        outcomes.append(await self._run_target(command, host_id, timeout, reporter))
                    finally:
                        metrics.task_targets_active.dec()

            await asyncio.gather(*(worker() for _ in range(workers)))

            failed = sum(1 for o in outcomes if o.status == TASK_FAILED)
            status = TASK_FAILED if failed else TASK_SUCCEEDED
            await reporter.info(
                f"Task finished: {len(outcomes) - failed} succeeded, {failed} failed "
                f"in {time.monotonic() - started:.1f}s"
            )
        except Exception as e:
            await reporter.error(f"Task aborted: {type(e).__name__}: {e}")
            raise
        finally:
            failed = sum(1 for o in outcomes if o.status == TASK_FAILED)
            metrics.task_runs_total.labels(status=status).inc()
            metrics.task_duration.observe(time.monotonic() - started)
            # Entries land before the terminal status so a late joiner replays everything
            try:
                await reporter.flush()
                await self.log_service.update_status(
                    op_id,
                    OperationStatus.COMPLETED if status == TASK_SUCCEEDED else OperationStatus.ERROR,
                )
            finally:
                await reporter.end(status, succeeded=len(outcomes) - failed, failed=failed)

        outcomes.sort(key=lambda o: host_ids.index(o.host_id))
        return TaskResult(op_id=op_id, status=status, outcomes=outcomes)

    async def _run_target(
        self, command: str, host_id: int, timeout: int, reporter: OperationReporter
    ) -> TargetOutcome:
        started = time.monotonic()
        await reporter.info(">>> start", host_id=host_id)
        try:
            if command == DISCOVER_COMMAND:
                count = await self.discovery.discover_on_host(host_id, reporter)
                await reporter.info(f"Discovered {count} container(s)", host_id=host_id)
                exit_code = 0
            else:
                exit_code = await self._execute(command, host_id, timeout, reporter)
        except Exception as e:
            logger.error(
                f"Task target {host_id} raised {type(e).__name__}: {sanitize_log_message(str(e))}",
                exc_info=True,
            )
            await reporter.error(f"<<< end (error: {e})", host_id=host_id)
            return TargetOutcome(
                host_id=host_id,
                status=TASK_FAILED,
                error=str(e),
                duration=time.monotonic() - started,
            )

        await reporter.info(f"<<< end (code {exit_code})", host_id=host_id)
        return TargetOutcome(
            host_id=host_id,
            status=TASK_SUCCEEDED if exit_code == 0 else TASK_FAILED,
            exit_code=exit_code,
            duration=time.monotonic() - started,
        )

    async def _execute(
        self, command: str, host_id: int, timeout: int, reporter: OperationReporter
    ) -> int:
        target = await self.hosts.get_target(host_id)

        async def on_stdout(chunk: str) -> None:
            await reporter.stdout(chunk, host_id=host_id)

        async def on_stderr(chunk: str) -> None:
            await reporter.stderr(chunk, host_id=host_id)

        result = await self.executor.execute_streaming(
            target,
            command,
            on_stdout,
            on_stderr,
            ExecOptions(connect_timeout=min(30, max(5, timeout // 2)), kill_after=timeout),
        )
        if result.transport_error:
            await reporter.error(result.transport_error, host_id=host_id)
        elif result.timed_out:
            await reporter.error(f"Command killed after {timeout}s", host_id=host_id)
        return result.exit_code

    @staticmethod
    def _title(command: str) -> str:
        if command == DISCOVER_COMMAND:
            return "Discover containers"
        return f"Run: {command[:80]}"
