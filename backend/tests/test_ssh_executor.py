"""Tests for the remote executor (fleetdock/services/ssh_executor.py)."""

import os
import tempfile
from unittest.mock import AsyncMock, patch

import pytest

from fleetdock.services.ssh_executor import (
    TIMEOUT_EXIT_CODE,
    TRANSPORT_ERROR_EXIT_CODE,
    ExecOptions,
    ExecResult,
    HostCredentials,
    RemoteExecutor,
    SSHTarget,
    build_ssh_argv,
)


def _option(argv, name):
    """Value of an ``-o Name=value`` option."""
    for i, arg in enumerate(argv):
        if arg == "-o" and argv[i + 1].startswith(f"{name}="):
            return argv[i + 1].split("=", 1)[1]
    return None


class TestBuildSshArgv:
    """argv construction for the system ssh client."""

    def test_password_auth_uses_sshpass_env(self):
        """Test the password travels in SSHPASS, never on the command line."""
        target = SSHTarget(
            address="10.0.0.5", user="ops", port=2222,
            credentials=HostCredentials(password="hunter2"),
        )
        argv, env = build_ssh_argv(target, "docker ps -a", ExecOptions())

        assert argv[:2] == ["sshpass", "-e"]
        assert env == {"SSHPASS": "hunter2"}
        assert "hunter2" not in " ".join(argv)
        assert _option(argv, "BatchMode") == "no"
        assert _option(argv, "PreferredAuthentications") == "password"
        assert argv[argv.index("-p") + 1] == "2222"
        assert argv[-3:] == ["ops@10.0.0.5", "--", "docker ps -a"]

    def test_key_auth_without_passphrase(self):
        target = SSHTarget(address="edge", credentials=HostCredentials(private_key="KEY"))
        argv, env = build_ssh_argv(target, "true", ExecOptions(), key_path="/tmp/key")

        assert argv[0] == "ssh"
        assert env == {}
        assert argv[argv.index("-i") + 1] == "/tmp/key"
        assert _option(argv, "BatchMode") == "yes"
        assert _option(argv, "IdentitiesOnly") == "yes"

    def test_key_with_passphrase_answers_passphrase_prompt(self):
        target = SSHTarget(
            address="edge",
            credentials=HostCredentials(private_key="KEY", passphrase="open-sesame"),
        )
        argv, env = build_ssh_argv(target, "true", ExecOptions(), key_path="/tmp/key")

        assert argv[:4] == ["sshpass", "-e", "-P", "passphrase"]
        assert env == {"SSHPASS": "open-sesame"}
        assert _option(argv, "BatchMode") == "no"

    def test_connect_timeout_and_host_key_policy(self):
        target = SSHTarget(address="edge")
        argv, _ = build_ssh_argv(
            target, "true", ExecOptions(connect_timeout=9000, host_key_checking="accept-new")
        )

        assert _option(argv, "ConnectTimeout") == "600"
        assert _option(argv, "StrictHostKeyChecking") == "accept-new"


class TestLoopbackExecution:
    """Loopback targets run through a local ``sh -lc``."""

    @pytest.fixture
    def local(self):
        return SSHTarget(address="127.0.0.1")

    @pytest.mark.asyncio
    async def test_captures_stdout(self, local):
        result = await RemoteExecutor().execute(local, "echo hello")

        assert result.ok
        assert "hello" in result.stdout

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_not_a_transport_error(self, local):
        """Test a failing command is a structural result, not an exception."""
        result = await RemoteExecutor().execute(local, "echo oops >&2; exit 3")

        assert result.exit_code == 3
        assert "oops" in result.stderr
        assert result.transport_error is None
        assert not result.ok

    @pytest.mark.asyncio
    async def test_streaming_callbacks(self, local):
        """Test sync and async callbacks both receive output."""
        out, err = [], []

        async def on_stderr(chunk):
            err.append(chunk)

        result = await RemoteExecutor().execute_streaming(
            local, "echo one; echo two >&2", on_stdout=out.append, on_stderr=on_stderr
        )

        assert result.ok
        assert "one" in "".join(out)
        assert "two" in "".join(err)
        assert "one" in result.stdout

    @pytest.mark.asyncio
    async def test_kill_after_timeout(self, local):
        """Test a command exceeding kill_after is killed with the timeout exit code."""
        result = await RemoteExecutor().execute(
            local, "sleep 5", ExecOptions(kill_after=0.3)
        )

        assert result.timed_out
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert not result.ok
        assert result.duration < 2

    @pytest.mark.asyncio
    async def test_kill_reaches_grandchildren(self, local):
        """Test the kill timer ends the call even when descendants hold the output pipes."""
        result = await RemoteExecutor().execute(
            local, "sh -c 'sleep 5; echo inner'; echo outer", ExecOptions(kill_after=0.3)
        )

        assert result.timed_out
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.duration < 2
        assert "inner" not in result.stdout
        assert "outer" not in result.stdout

    @pytest.mark.asyncio
    async def test_input_is_written_to_stdin(self, local):
        """Test secrets can be handed to the command without appearing in argv."""
        result = await RemoteExecutor().execute(
            local, "read line; echo \"got $line\"", ExecOptions(input="from-stdin\n")
        )

        assert result.ok
        assert result.stdout.strip() == "got from-stdin"


class TestRemoteExecution:
    """Remote targets, with the subprocess layer mocked."""

    @pytest.mark.asyncio
    async def test_private_key_file_lifecycle(self):
        """Test the key is written 0600 for the call and removed afterwards."""
        seen = {}

        async def fake_spawn(argv, env, kill_after, on_stdout, on_stderr, input_data=None):
            key_path = argv[argv.index("-i") + 1]
            seen["path"] = key_path
            seen["mode"] = os.stat(key_path).st_mode & 0o777
            with open(key_path) as fh:
                seen["content"] = fh.read()
            return ExecResult(exit_code=0, stdout="ok\n")

        executor = RemoteExecutor()
        target = SSHTarget(address="edge", credentials=HostCredentials(private_key="PRIVATE"))
        with patch.object(executor, "_spawn_and_wait", side_effect=fake_spawn):
            result = await executor.execute(target, "echo ok")

        assert result.ok
        assert seen["mode"] == 0o600
        assert seen["content"] == "PRIVATE\n"
        assert not os.path.exists(seen["path"])

    @pytest.mark.asyncio
    async def test_key_file_removed_when_setup_fails(self):
        """Test a key file that cannot be secured is not left behind."""
        created = []
        real_mkstemp = tempfile.mkstemp

        def tracking_mkstemp(*args, **kwargs):
            fd, path = real_mkstemp(*args, **kwargs)
            created.append(path)
            return fd, path

        executor = RemoteExecutor()
        target = SSHTarget(address="edge", credentials=HostCredentials(private_key="PRIVATE"))
        with patch(
            "fleetdock.services.ssh_executor.tempfile.mkstemp", side_effect=tracking_mkstemp
        ), patch("fleetdock.services.ssh_executor.os.fchmod", side_effect=OSError("fchmod refused")):
            result = await executor.execute(target, "echo ok")

        assert result.exit_code == TRANSPORT_ERROR_EXIT_CODE
        assert "fchmod refused" in result.transport_error
        assert len(created) == 1
        assert not os.path.exists(created[0])

    @pytest.mark.asyncio
    async def test_spawn_failure_is_transport_error(self):
        executor = RemoteExecutor()
        target = SSHTarget(address="edge")
        with patch(
            "fleetdock.services.ssh_executor.asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=FileNotFoundError("ssh")),
        ):
            result = await executor.execute(target, "true")

        assert result.exit_code == TRANSPORT_ERROR_EXIT_CODE
        assert result.transport_error.startswith("spawn failed")


class TestClassifyTransport:
    """ssh/sshpass exit codes that mean the remote command never ran."""

    def test_sshpass_bad_password(self):
        result = RemoteExecutor._classify_transport("sshpass", ExecResult(exit_code=5))

        assert result.transport_error == "invalid password or passphrase"
        assert result.exit_code == TRANSPORT_ERROR_EXIT_CODE

    def test_ssh_connection_refused(self):
        result = RemoteExecutor._classify_transport(
            "ssh",
            ExecResult(
                exit_code=255,
                stderr="Warning: something\nssh: connect to host edge port 22: Connection refused\n",
            ),
        )

        assert result.transport_error == "ssh: connect to host edge port 22: Connection refused"

    def test_remote_exit_code_untouched(self):
        """Test an ordinary non-zero exit from the remote command is kept."""
        result = RemoteExecutor._classify_transport("sshpass", ExecResult(exit_code=1))

        assert result.transport_error is None
        assert result.exit_code == 1

    def test_raise_for_transport(self):
        from fleetdock.exceptions import CommandExecutionError

        with pytest.raises(CommandExecutionError):
            ExecResult(exit_code=255, transport_error="refused").raise_for_transport()
        assert ExecResult(exit_code=1).raise_for_transport().exit_code == 1
