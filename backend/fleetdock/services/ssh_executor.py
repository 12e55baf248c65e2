"""Remote command execution over SSH (or a local shell for loopback hosts).

The executor shells out to the system ``ssh`` client. Password and
passphrase authentication go through ``sshpass`` with the secret passed in
the ``SSHPASS`` environment variable, never on the command line. Private
keys are written to a 0600 temporary file that only lives for the duration
of the call.

A non-zero exit code is a normal, structural result. Only transport
failures (spawn errors, rejected auth, refused or unreachable connections)
are flagged as ``transport_error`` with the sentinel exit code.
"""

import asyncio
import codecs
import inspect
import logging
import os
import signal
import tempfile
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from fleetdock.exceptions import CommandExecutionError
from fleetdock.services import metrics
from fleetdock.utils.security import redact_secrets, sanitize_log_message

logger = logging.getLogger(__name__)

# Exit code reported for transport failures
TRANSPORT_ERROR_EXIT_CODE = 255
# Exit code reported when the kill timer fired (same convention as timeout(1))
TIMEOUT_EXIT_CODE = 124

# sshpass exit codes that mean the remote command never ran
_SSHPASS_TRANSPORT_CODES = {2, 3, 5, 6}

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "localhost", "::1"})

_READ_CHUNK = 4096

# Bound on reaping the process group after SIGKILL
KILL_GRACE_SECONDS = 5.0

OutputCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class HostCredentials:
    """Decrypted auth material for one call. Never persisted or logged."""

    password: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None

    @property
    def secrets(self) -> list[str]:
        return [s for s in (self.password, self.passphrase) if s]


@dataclass
class SSHTarget:
    """Where and as whom to run a command."""

    address: str
    user: str = "root"
    port: int = 22
    credentials: HostCredentials = field(default_factory=HostCredentials)
    host_id: Optional[int] = None
    # consulted by the docker proxy policy
    tags: list[str] = field(default_factory=list)
    role: str = "remote"

    @property
    def is_loopback(self) -> bool:
        return self.address.strip().lower() in LOOPBACK_ADDRESSES


@dataclass
class ExecOptions:
    """Timeouts and host-key policy for a single call.

    Attributes:
        connect_timeout: Bounds the SSH handshake only (seconds, 1-600)
        kill_after: Hard wall-clock limit; the child is killed afterwards
        host_key_checking: ``yes`` (strict), ``accept-new`` or ``no``
        input: Written to the command's stdin, then closed; keeps secrets
            such as registry passwords out of argv
    """

    connect_timeout: int = 10
    kill_after: float = 100.0
    host_key_checking: str = "yes"
    input: Optional[str] = None


@dataclass
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    transport_error: Optional[str] = None
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.transport_error and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout/stderr, used for error classification."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def raise_for_transport(self) -> "ExecResult":
        """Raise CommandExecutionError if the command never reached the remote side."""
        if self.transport_error:
            raise CommandExecutionError(self.transport_error, self.exit_code, self.stderr)
        return self


def build_ssh_argv(
    target: SSHTarget, command: str, options: ExecOptions, key_path: Optional[str] = None
) -> tuple[list[str], dict[str, str]]:
    """Build the argv and extra environment for an ssh invocation.

    Returns:
        Tuple of (argv, extra environment variables)
    """
    creds = target.credentials
    connect_timeout = max(1, min(600, int(options.connect_timeout)))
    ssh_args = [
        "ssh",
        "-o", "BatchMode=yes",
        "-o", f"StrictHostKeyChecking={options.host_key_checking}",
        "-o", f"ConnectTimeout={connect_timeout}",
        "-p", str(target.port or 22),
    ]

    if key_path:
        ssh_args += ["-o", "IdentitiesOnly=yes", "-i", key_path]

    if creds.password and not key_path:
        ssh_args += [
            "-o", "PreferredAuthentications=password",
            "-o", "PubkeyAuthentication=no",
        ]
    else:
        ssh_args += ["-o", "PreferredAuthentications=publickey,password"]

    ssh_args += [f"{target.user}@{target.address}", "--", command]

    # sshpass feeds the password (or key passphrase) to the prompt
    sshpass_args = ["sshpass", "-e"]
    if key_path and creds.passphrase:
        secret = creds.passphrase
        sshpass_args += ["-P", "passphrase"]
    elif creds.password:
        secret = creds.password
    else:
        return ssh_args, {}

    # BatchMode would suppress the prompt sshpass answers
    ssh_args[2] = "BatchMode=no"
    return sshpass_args + ssh_args, {"SSHPASS": secret}


class RemoteExecutor:
    """Run shell commands on hosts, capturing or streaming their output."""

    async def execute(
        self,
        target: SSHTarget,
        command: str,
        options: Optional[ExecOptions] = None,
    ) -> ExecResult:
        """Run a command and capture its output."""
        return await self._run(target, command, options or ExecOptions(), None, None)

    async def execute_streaming(
        self,
        target: SSHTarget,
        command: str,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        options: Optional[ExecOptions] = None,
    ) -> ExecResult:
        """Run a command, invoking callbacks for every decoded output chunk.

        Output is still accumulated into the returned result. Callbacks may be
        plain functions or coroutines.
        """
        return await self._run(target, command, options or ExecOptions(), on_stdout, on_stderr)

    async def _run(
        self,
        target: SSHTarget,
        command: str,
        options: ExecOptions,
        on_stdout: Optional[OutputCallback],
        on_stderr: Optional[OutputCallback],
    ) -> ExecResult:
        mode = "local" if target.is_loopback else "ssh"
        key_path: Optional[str] = None
        started = time.monotonic()

        try:
            if target.is_loopback:
                argv, extra_env = ["sh", "-lc", command], {}
            else:
                if target.credentials.private_key:
                    key_path = self._write_key_file(target.credentials.private_key)
                argv, extra_env = build_ssh_argv(target, command, options, key_path)

            env = {**os.environ, **extra_env} if extra_env else None
            result = await self._spawn_and_wait(
                argv, env, options.kill_after, on_stdout, on_stderr, input_data=options.input
            )
        except OSError as e:
            logger.error(
                f"Failed to spawn command for {sanitize_log_message(target.address)}: "
                f"{type(e).__name__}: {e}"
            )
            result = ExecResult(
                exit_code=TRANSPORT_ERROR_EXIT_CODE,
                stderr=str(e),
                transport_error=f"spawn failed: {e}",
            )
        finally:
            if key_path:
                self._remove_key_file(key_path)

        if mode == "ssh" and not result.timed_out and not result.transport_error:
            result = self._classify_transport(argv[0], result)

        result.duration = time.monotonic() - started
        metrics.remote_commands_total.labels(mode=mode, outcome=self._outcome(result)).inc()
        metrics.remote_command_duration.labels(mode=mode).observe(result.duration)

        if result.transport_error:
            reason = redact_secrets(result.transport_error, target.credentials.secrets)
            logger.warning(
                f"Transport failure on {sanitize_log_message(target.address)}: "
                f"{sanitize_log_message(reason)}"
            )
        elif result.timed_out:
            logger.warning(
                f"Command on {sanitize_log_message(target.address)} killed after "
                f"{options.kill_after}s"
            )
        return result

    async def _spawn_and_wait(
        self,
        argv: list[str],
        env: Optional[dict[str, str]],
        kill_after: float,
        on_stdout: Optional[OutputCallback],
        on_stderr: Optional[OutputCallback],
        input_data: Optional[str] = None,
    ) -> ExecResult:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            # Own process group, so the kill timer reaches every descendant
            start_new_session=True,
        )

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async def feed() -> None:
            if input_data is None:
                return
            try:
                process.stdin.write(input_data.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Command exited before reading its stdin")
            finally:
                process.stdin.close()

        async def pump(stream: asyncio.StreamReader, parts: list[str], callback) -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(_READ_CHUNK)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    parts.append(text)
                    if callback is not None:
                        maybe = callback(text)
                        if inspect.isawaitable(maybe):
                            await maybe
                if not chunk:
                    break

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    feed(),
                    pump(process.stdout, stdout_parts, on_stdout),
                    pump(process.stderr, stderr_parts, on_stderr),
                    process.wait(),
                ),
                timeout=kill_after,
            )
        except (asyncio.TimeoutError, TimeoutError):
            self._kill(process)
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
            except (asyncio.TimeoutError, TimeoutError):
                logger.warning(f"Process group {process.pid} still running after SIGKILL")
            return ExecResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                timed_out=True,
            )
        except asyncio.CancelledError:
            self._kill(process)
            raise

        return ExecResult(
            exit_code=process.returncode if process.returncode is not None else TRANSPORT_ERROR_EXIT_CODE,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        """SIGKILL the whole process group; the direct child may already be gone."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.kill()

    @staticmethod
    def _classify_transport(program: str, result: ExecResult) -> ExecResult:
        """Flag ssh/sshpass failures that happened before the command ran."""
        if program == "sshpass" and result.exit_code in _SSHPASS_TRANSPORT_CODES:
            reason = {
                2: "sshpass argument error",
                3: "sshpass runtime error",
                5: "invalid password or passphrase",
                6: "host key unknown",
            }[result.exit_code]
            result.transport_error = reason
            result.exit_code = TRANSPORT_ERROR_EXIT_CODE
        elif result.exit_code == TRANSPORT_ERROR_EXIT_CODE:
            # ssh reserves 255 for its own errors
            lines = [line for line in result.stderr.strip().splitlines() if line.strip()]
            result.transport_error = lines[-1] if lines else "ssh connection failed"
        return result

    @staticmethod
    def _outcome(result: ExecResult) -> str:
        if result.transport_error:
            return "transport_error"
        if result.timed_out:
            return "timeout"
        return "ok" if result.exit_code == 0 else "nonzero"

    @staticmethod
    def _write_key_file(private_key: str) -> str:
        fd, path = tempfile.mkstemp(prefix="fleetdock-key-")
        try:
            try:
                os.fchmod(fd, 0o600)
                data = private_key if private_key.endswith("\n") else private_key + "\n"
                os.write(fd, data.encode("utf-8"))
            finally:
                os.close(fd)
        except OSError:
            RemoteExecutor._remove_key_file(path)
            raise
        return path

    @staticmethod
    def _remove_key_file(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove temporary key file: {e}")
