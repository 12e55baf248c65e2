"""Tests for update engine orchestration (fleetdock/services/update_engine.py).

Tests the update workflow including:
- CLI path: pull, backup rename, recreate, backup cleanup
- Rollback when recreation fails or raises
- Compose path: compose pull then up -d --no-deps
- Per-container serialization of updates
"""

import asyncio
from unittest.mock import patch

import pytest

from conftest import fail, ok
from fleetdock.services.operation_reporter import OperationReporter
from fleetdock.services.ssh_executor import ExecResult
from fleetdock.services.update_engine import backup_name

RUN_COMMAND = "docker run -d --name web -p 8080:80 nginx:latest"


@pytest.fixture
async def cli_container(make_host, make_container):
    host = await make_host()
    return await make_container(
        host_id=host.id, name="web", run_command=RUN_COMMAND, update_available=True
    )


@pytest.fixture
async def compose_container(make_host, make_container):
    host = await make_host()
    return await make_container(
        host_id=host.id,
        name="media-web-1",
        is_compose_managed=True,
        compose_project="media",
        compose_service="web",
        compose_working_dir="/opt/stacks/media",
        update_available=True,
    )


def command_index(fake_executor, pattern):
    import re

    for i, command in enumerate(fake_executor.commands):
        if re.search(pattern, command):
            return i
    raise AssertionError(f"no command matching {pattern!r} in {fake_executor.commands}")


class TestBackupName:
    def test_timestamp_suffix(self):
        assert backup_name("web").startswith("web_backup_")
        assert backup_name("web")[len("web_backup_"):].isdigit()


class TestCliUpdate:
    """Rename/recreate workflow for containers started with docker run."""

    @pytest.mark.asyncio
    async def test_successful_update(self, services, fake_executor, cli_container):
        result = await services.engine.update_one(cli_container.id)

        assert result == {"ok": True}
        pull = command_index(fake_executor, r"docker pull nginx:latest")
        rename = command_index(fake_executor, rf"docker rename {cli_container.container_id} web_backup_\d+")
        stop = command_index(fake_executor, r"docker stop web_backup_\d+")
        recreate = command_index(fake_executor, r"docker run -d --name web")
        cleanup = command_index(fake_executor, r"docker rm -f web_backup_\d+")
        assert pull < rename < stop < recreate < cleanup
        assert not (await services.discovery.get_container(cli_container.id)).update_available

    @pytest.mark.asyncio
    async def test_explicit_image_ref(self, services, fake_executor, cli_container):
        await services.engine.update_one(cli_container.id, image_ref="nginx:1.27")

        assert fake_executor.ran(r"docker pull nginx:1.27")

    @pytest.mark.asyncio
    async def test_pull_failure_changes_nothing(self, services, fake_executor, cli_container):
        """Test a failed pull leaves the running container untouched."""
        fake_executor.on(r"docker pull", fail("manifest for nginx:latest not found"))

        result = await services.engine.update_one(cli_container.id)

        assert result == {"ok": False, "reason": "pull failed"}
        assert not fake_executor.ran(r"docker rename")
        assert not fake_executor.ran(r"docker stop")
        assert (await services.discovery.get_container(cli_container.id)).update_available

    @pytest.mark.asyncio
    async def test_rename_failure(self, services, fake_executor, cli_container):
        fake_executor.on(r"docker rename", fail("No such container"))

        result = await services.engine.update_one(cli_container.id)

        assert result == {"ok": False, "reason": "backup failed"}
        assert not fake_executor.ran(r"docker stop")
        assert not fake_executor.ran(r"docker run -d")

    @pytest.mark.asyncio
    async def test_recreate_failure_rolls_back(self, services, fake_executor, cli_container):
        """Test the backup is restored under the original name and restarted."""
        fake_executor.on(r"docker run -d", fail("Bind for 0.0.0.0:8080 failed: port is already allocated"))

        result = await services.engine.update_one(cli_container.id)

        assert result == {"ok": False, "reason": "recreate failed, rolled back"}
        remove_new = command_index(fake_executor, r"docker rm -f web'")
        restore = command_index(fake_executor, r"docker rename web_backup_\d+ web'")
        restart = command_index(fake_executor, r"docker start web'")
        assert remove_new < restore < restart
        assert not fake_executor.ran(r"docker rm -f web_backup_")
        assert (await services.discovery.get_container(cli_container.id)).update_available

    @pytest.mark.asyncio
    async def test_stopped_container_not_restarted_on_rollback(
        self, services, fake_executor, make_host, make_container
    ):
        host = await make_host()
        container = await make_container(
            host_id=host.id, name="batch", state="exited", run_command="docker run -d --name batch alpine"
        )
        fake_executor.on(r"docker run -d", fail("boom"))

        await services.engine.update_one(container.id)

        assert fake_executor.ran(r"docker rename batch_backup_\d+ batch'")
        assert not fake_executor.ran(r"docker start")

    @pytest.mark.asyncio
    async def test_exception_after_rename_rolls_back(self, services, fake_executor, cli_container):
        with patch.object(services.docker, "run_shell", side_effect=RuntimeError("ssh dropped")):
            result = await services.engine.update_one(cli_container.id)

        assert result == {"ok": False, "reason": "exception occurred, rolled back"}
        assert fake_executor.ran(r"docker rename web_backup_\d+ web'")

    @pytest.mark.asyncio
    async def test_missing_run_command(self, services, fake_executor, make_host, make_container):
        host = await make_host()
        container = await make_container(host_id=host.id, name="legacy", run_command=None)

        result = await services.engine.update_one(container.id)

        assert result == {"ok": False, "reason": "missing runCommand"}
        assert fake_executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_container(self, services):
        assert await services.engine.update_one(424242) == {"ok": False, "reason": "not found"}

    @pytest.mark.asyncio
    async def test_recreate_output_is_streamed(self, services, fake_executor, cli_container):
        fake_executor.on(r"docker run -d", ok("f00dbabe1234\n"))
        reporter = OperationReporter(op_id="op-stream")

        await services.engine.update_one(cli_container.id, reporter=reporter)

        stdout = [e["content"] for e in reporter.entries if e["stream"] == "stdout"]
        assert "f00dbabe1234\n" in stdout
        assert all(e["host_id"] == cli_container.host_id for e in reporter.entries if e["stream"] == "stdout")


class TestComposeUpdate:
    """Declarative path for compose-managed containers."""

    @pytest.mark.asyncio
    async def test_compose_pull_then_up(self, services, fake_executor, compose_container):
        result = await services.engine.update_one(compose_container.id)

        assert result == {"ok": True, "code": 0}
        pull = command_index(fake_executor, r"cd /opt/stacks/media && docker compose pull web")
        up = command_index(fake_executor, r"cd /opt/stacks/media && docker compose up -d --no-deps web")
        assert pull < up
        assert not fake_executor.ran(r"docker rename")
        assert not (await services.discovery.get_container(compose_container.id)).update_available

    @pytest.mark.asyncio
    async def test_compose_pull_failure_skips_up(self, services, fake_executor, compose_container):
        fake_executor.on(r"docker compose pull", fail("pull access denied", exit_code=18))

        result = await services.engine.update_one(compose_container.id)

        assert result == {"ok": False, "reason": "pull failed", "code": 18}
        assert not fake_executor.ran(r"docker compose up")

    @pytest.mark.asyncio
    async def test_compose_up_failure(self, services, fake_executor, compose_container):
        fake_executor.on(r"docker compose up", fail("service web failed to build", exit_code=1))

        result = await services.engine.update_one(compose_container.id)

        assert result == {"ok": False, "reason": "compose up failed", "code": 1}
        assert (await services.discovery.get_container(compose_container.id)).update_available

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_fail_update(
        self, services, fake_executor, compose_container
    ):
        """Test the follow-up refresh is advisory."""
        with patch.object(
            services.discovery, "refresh_status", side_effect=RuntimeError("inspect exploded")
        ):
            result = await services.engine.update_one(compose_container.id)

        assert result["ok"] is True


class TestSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_update_rejected(self, services, cli_container):
        """Test a second update of the same container is rejected while one runs."""
        release = asyncio.Event()
        pulling = asyncio.Event()

        async def slow_pull(target, args, timeout=None):
            pulling.set()
            await release.wait()
            return ExecResult(exit_code=0)

        with patch.object(services.docker, "run_with_retry", side_effect=slow_pull):
            first = asyncio.create_task(services.engine.update_one(cli_container.id))
            await pulling.wait()

            second = await services.engine.update_one(cli_container.id)

            release.set()
            first_result = await first

        assert second == {"ok": False, "reason": "update already in progress"}
        assert first_result == {"ok": True}

    @pytest.mark.asyncio
    async def test_lock_is_forgotten_after_update(self, services, fake_executor, cli_container):
        """Test finished updates leave no per-container locks behind."""
        await services.engine.update_one(cli_container.id)
        fake_executor.on(r"docker pull", fail("manifest unknown"))
        await services.engine.update_one(cli_container.id)

        assert services.engine._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_when_update_raises(self, services, cli_container):
        with patch.object(
            services.engine, "_update_cli", side_effect=RuntimeError("boom")
        ), pytest.raises(RuntimeError):
            await services.engine.update_one(cli_container.id)

        assert services.engine._locks == {}
        assert (await services.engine.update_one(cli_container.id))["ok"] is True
