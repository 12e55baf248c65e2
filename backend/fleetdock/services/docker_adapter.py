"""Docker CLI adapter on top of the remote executor.

Every ``docker ...`` invocation is rendered into one shell-escaped string and
run as ``sh -lc '<command>'`` on the target, so local and remote hosts see
exactly the same command. Sub-commands that talk to a registry get optional
``docker login`` and proxy environment injection; everything else runs bare.
"""

import json
import logging
import shlex
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetdock.exceptions import DockerOutputParseError
from fleetdock.schemas.docker import (
    ComposeProject,
    ContainerInspect,
    ImageInspect,
    parse_compose_ls,
    parse_container_inspect,
    parse_image_inspect,
)
from fleetdock.services import metrics
from fleetdock.services.settings_service import SettingsService
from fleetdock.services.ssh_executor import (
    ExecOptions,
    ExecResult,
    OutputCallback,
    RemoteExecutor,
    SSHTarget,
)
from fleetdock.utils.retry import async_retry_result
from fleetdock.utils.security import mask_sensitive, redact_secrets, sanitize_log_message

logger = logging.getLogger(__name__)

# Sub-command prefixes that need registry network access
NETWORK_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("pull",),
    ("push",),
    ("search",),
    ("login",),
    ("logout",),
    ("manifest", "inspect"),
    ("buildx", "imagetools", "inspect"),
)

NETWORK_ERROR_SIGNATURES = (
    "eof",
    "connection reset",
    "connection refused",
    "timeout",
    "timed out",
    "network is unreachable",
    "no route to host",
    "no such host",
    "temporary failure in name resolution",
    "server misbehaving",
    "unable to reach registry",
)

RATE_LIMIT_SIGNATURES = ("toomanyrequests", "too many requests")

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


def is_network_command(args: Sequence[str]) -> bool:
    """Whether ``docker <args>`` needs registry network access."""
    words = [a for a in args if not a.startswith("-")]
    return any(tuple(words[: len(prefix)]) == prefix for prefix in NETWORK_COMMANDS)


def is_network_error(text: Optional[str]) -> bool:
    """Classify CLI error text as a transient network failure."""
    if not text:
        return False
    lowered = text.lower()
    return any(signature in lowered for signature in NETWORK_ERROR_SIGNATURES)


def is_rate_limited(text: Optional[str]) -> bool:
    """Classify CLI error text as registry rate limiting."""
    if not text:
        return False
    lowered = text.lower()
    return any(signature in lowered for signature in RATE_LIMIT_SIGNATURES)


def _should_retry(result: ExecResult) -> bool:
    # rate limiting is handled by the mirror fallback, transport errors are fatal
    if result.ok or result.transport_error:
        return False
    return is_network_error(result.output) and not is_rate_limited(result.output)


@dataclass
class ProxyConfig:
    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""

    def env_assignments(self) -> list[str]:
        assignments = []
        for name, value in (
            ("HTTP_PROXY", self.http_proxy),
            ("HTTPS_PROXY", self.https_proxy),
            ("NO_PROXY", self.no_proxy),
        ):
            if value:
                assignments += [f"{name}={value}", f"{name.lower()}={value}"]
        return assignments


@dataclass
class RegistryLogin:
    server: str
    username: str
    password: str


class DockerCommandAdapter:
    """Build and execute docker commands through a :class:`RemoteExecutor`.

    Proxy and registry settings are read from the settings store on every
    network command so that changes apply without a restart.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        session_factory: async_sessionmaker,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 8.0,
    ):
        self.executor = executor
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    # Settings

    async def command_timeout(self) -> int:
        async with self.session_factory() as db:
            return await SettingsService.get_int_clamped(
                db, "command_timeout_seconds", 100, 10, 900
            )

    async def _proxy_for(self, target: SSHTarget) -> Optional[ProxyConfig]:
        async with self.session_factory() as db:
            if not await SettingsService.get_bool(db, "docker_proxy_enabled"):
                return None
            if await SettingsService.get_bool(db, "docker_proxy_local_only"):
                local_tag = await SettingsService.get(db, "docker_proxy_local_tag", "local")
                if target.role != "local" and local_tag not in (target.tags or []):
                    return None
            proxy = ProxyConfig(
                http_proxy=await SettingsService.get(db, "docker_http_proxy", "") or "",
                https_proxy=await SettingsService.get(db, "docker_https_proxy", "") or "",
                no_proxy=await SettingsService.get(db, "docker_no_proxy", "") or "",
            )
        if not proxy.env_assignments():
            return None
        return proxy

    async def _registry_login(self) -> Optional[RegistryLogin]:
        async with self.session_factory() as db:
            if not await SettingsService.get_bool(db, "docker_registry_login_enabled"):
                return None
            username = await SettingsService.get(db, "docker_registry_username", "")
            password = await SettingsService.get(db, "docker_registry_password", "")
            server = await SettingsService.get(db, "docker_registry_server", "") or ""
        if not username or not password:
            logger.warning("Registry login enabled but username or password is missing")
            return None
        return RegistryLogin(server=server, username=username, password=password)

    # Command rendering

    @staticmethod
    def wrap_shell(command: str) -> str:
        """Wrap a command as ``sh -lc '<escaped>'``."""
        return f"sh -lc {shlex.quote(command)}"

    @staticmethod
    def render(args: Sequence[str], proxy: Optional[ProxyConfig] = None) -> str:
        """Render docker args as one shell command, with optional proxy env prefix."""
        command = shlex.join(["docker", *args])
        if proxy:
            command = f"{shlex.join(['env', *proxy.env_assignments()])} {command}"
        return command

    def _options(self, timeout: int, input: Optional[str] = None) -> ExecOptions:
        return ExecOptions(
            connect_timeout=min(30, max(5, timeout // 2)),
            kill_after=timeout,
            host_key_checking="yes",
            input=input,
        )

    # Execution

    async def run(
        self,
        target: SSHTarget,
        args: Sequence[str],
        timeout: Optional[int] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> ExecResult:
        """Run ``docker <args>`` on a host.

        Network commands first get an optional registry login and run with
        the proxy environment when the proxy policy allows it for this host.
        """
        timeout = timeout or await self.command_timeout()
        proxy = None
        if is_network_command(args):
            proxy = await self._proxy_for(target)
            if args and args[0] != "login":
                await self._ensure_login(target, proxy, timeout)

        command = self.wrap_shell(self.render(args, proxy))
        logger.debug(
            f"docker {sanitize_log_message(' '.join(args))} on {sanitize_log_message(target.address)}"
        )
        if on_stdout or on_stderr:
            return await self.executor.execute_streaming(
                target, command, on_stdout, on_stderr, self._options(timeout)
            )
        return await self.executor.execute(target, command, self._options(timeout))

    async def run_shell(
        self,
        target: SSHTarget,
        command: str,
        timeout: Optional[int] = None,
        network: bool = False,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> ExecResult:
        """Run a prepared shell command (``cd dir && docker compose ...``, a run command).

        With ``network=True`` the proxy environment is exported for the whole
        command and a registry login is attempted first.
        """
        timeout = timeout or await self.command_timeout()
        if network:
            proxy = await self._proxy_for(target)
            await self._ensure_login(target, proxy, timeout)
            if proxy:
                exports = " ".join(f"export {shlex.quote(a)};" for a in proxy.env_assignments())
                command = f"{exports} {command}"

        wrapped = self.wrap_shell(command)
        if on_stdout or on_stderr:
            return await self.executor.execute_streaming(
                target, wrapped, on_stdout, on_stderr, self._options(timeout)
            )
        return await self.executor.execute(target, wrapped, self._options(timeout))

    async def run_with_retry(
        self, target: SSHTarget, args: Sequence[str], timeout: Optional[int] = None
    ) -> ExecResult:
        """Run a docker command, retrying transient network failures with backoff.

        Successes and non-network failures return immediately.
        """
        retrying = async_retry_result(
            _should_retry,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            on_retry=lambda result, attempt: metrics.docker_network_retries_total.inc(),
        )(self.run)
        return await retrying(target, args, timeout)

    async def _ensure_login(
        self, target: SSHTarget, proxy: Optional[ProxyConfig], timeout: int
    ) -> None:
        login = await self._registry_login()
        if not login:
            return

        login_args = ["login", "--username", login.username, "--password-stdin"]
        if login.server:
            login_args.append(login.server)
        # The password travels on stdin, never in an argv on either side
        result = await self.executor.execute(
            target,
            self.wrap_shell(self.render(login_args, proxy)),
            self._options(min(timeout, 60), input=login.password),
        )
        if not result.ok:
            detail = redact_secrets(result.stderr.strip()[:200], [login.password])
            logger.warning(
                f"docker login as {mask_sensitive(login.username)} failed on "
                f"{sanitize_log_message(target.address)} (exit {result.exit_code}): "
                f"{sanitize_log_message(detail)}; continuing"
            )

    # Structured helpers

    async def ps_all(self, target: SSHTarget) -> ExecResult:
        """``docker ps -a`` as raw table text."""
        return await self.run(target, ["ps", "-a"])

    async def inspect_containers(
        self, target: SSHTarget, container_ids: Sequence[str]
    ) -> list[ContainerInspect]:
        """Inspect containers one ID at a time, skipping IDs that fail or do not parse."""
        details: list[ContainerInspect] = []
        for container_id in container_ids:
            result = await self.run(target, ["inspect", container_id])
            if not result.ok:
                logger.debug(
                    f"inspect {sanitize_log_message(container_id)} failed: "
                    f"{sanitize_log_message(result.stderr.strip()[:200])}"
                )
                continue
            try:
                details.extend(parse_container_inspect(result.stdout))
            except DockerOutputParseError as e:
                logger.warning(f"Skipping unparseable inspect output for {container_id}: {e}")
        return details

    async def inspect_image(self, target: SSHTarget, image: str) -> Optional[ImageInspect]:
        """``docker image inspect`` for an image ID or reference; None when unavailable."""
        result = await self.run(target, ["image", "inspect", image])
        if not result.ok:
            return None
        try:
            return parse_image_inspect(result.stdout)
        except DockerOutputParseError as e:
            logger.warning(f"Skipping unparseable image inspect output for {image}: {e}")
            return None

    async def compose_ls(self, target: SSHTarget) -> list[ComposeProject]:
        """``docker compose ls -a``, JSON format with a table-text fallback."""
        result = await self.run(target, ["compose", "ls", "-a", "--format", "json"])
        if not result.ok:
            # older compose releases lack --format
            result = await self.run(target, ["compose", "ls", "-a"])
            if not result.ok:
                logger.warning(
                    f"compose ls failed on {sanitize_log_message(target.address)}: "
                    f"{sanitize_log_message(result.stderr.strip()[:200])}"
                )
                return []
        return parse_compose_ls(result.stdout)

    async def compose_project_status(
        self, target: SSHTarget, project: str
    ) -> Optional[ComposeProject]:
        """The ``compose ls`` entry for a project, or None if absent."""
        for entry in await self.compose_ls(target):
            if entry.name == project:
                return entry
        return None

    async def ps_by_compose_project(self, target: SSHTarget, project: str) -> list[str]:
        """IDs of all containers (any state) labelled with a compose project."""
        result = await self.run(
            target,
            [
                "ps",
                "-a",
                "--filter",
                f"label={COMPOSE_PROJECT_LABEL}={project}",
                "--format",
                "{{json .}}",
            ],
        )
        if not result.ok:
            return []
        ids = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping unparseable ps line: {line[:80]}")
                continue
            if isinstance(row, dict) and row.get("ID"):
                ids.append(row["ID"])
        return ids
