"""Tests for the HTTP API (containers, compose, tasks, operations, hosts)."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status

from conftest import fail, ok
from fleetdock.models.operation_log import OperationStatus


async def _wait_for_operation(client, op_id: str, attempts: int = 100) -> dict:
    for _ in range(attempts):
        response = await client.get(f"/api/v1/operations/{op_id}")
        data = response.json()
        if data["status"] in OperationStatus.TERMINAL:
            return data
        await asyncio.sleep(0.02)
    raise AssertionError(f"operation {op_id} did not finish")


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "fleetdock",
        "update_check": {"next_run": None, "last_run": None},
    }


@pytest.mark.asyncio
async def test_health_reports_update_check_times(client, services):
    """Test the scheduler's last and next update check are exposed."""
    from datetime import datetime, timezone

    last = datetime(2026, 10, 1, 3, 0, tzinfo=timezone.utc)
    upcoming = datetime(2026, 10, 2, 3, 0, tzinfo=timezone.utc)
    services.scheduler._last_check = last

    with patch.object(services.scheduler, "get_next_run_time", return_value=upcoming):
        response = await client.get("/health")

    assert response.json()["update_check"] == {
        "next_run": upcoming.isoformat(),
        "last_run": last.isoformat(),
    }


@pytest.mark.asyncio
async def test_metrics_endpoint(client, make_host):
    """Test Prometheus exposition includes inventory gauges."""
    await make_host()

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "fleetdock_hosts_total" in response.text


@pytest.mark.asyncio
async def test_list_containers_empty(client):
    response = await client.get("/api/v1/containers/")

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_list_containers_with_filters(client, make_host, make_container):
    """Test host and update filters narrow the listing."""
    a = await make_host()
    b = await make_host()
    await make_container(host_id=a.id, name="web", update_available=True)
    await make_container(host_id=a.id, name="db")
    await make_container(host_id=b.id, name="cache")

    response = await client.get(f"/api/v1/containers/?host_id={a.id}")
    assert {c["name"] for c in response.json()} == {"web", "db"}

    response = await client.get("/api/v1/containers/?update_available=true")
    assert [c["name"] for c in response.json()] == ["web"]


@pytest.mark.asyncio
async def test_get_container_not_found(client):
    response = await client.get("/api/v1/containers/9999")

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_update_unknown_container_returns_404(client):
    response = await client.post("/api/v1/containers/9999/update")

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_update_container_records_operation(client, services, make_host, make_container):
    """Test an update runs under a new operation that ends COMPLETED."""
    host = await make_host()
    container = await make_container(host_id=host.id, name="web")

    with patch.object(
        services.engine, "update_one", AsyncMock(return_value={"ok": True, "code": 0})
    ) as update_one:
        response = await client.post(
            f"/api/v1/containers/{container.id}/update", json={"image_ref": "nginx:1.27"}
        )

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["op_id"]
    assert update_one.await_args.kwargs["image_ref"] == "nginx:1.27"

    operation = (await client.get(f"/api/v1/operations/{data['op_id']}")).json()
    assert operation["status"] == OperationStatus.COMPLETED
    assert operation["title"] == "Update web"


@pytest.mark.asyncio
async def test_failed_update_marks_operation_error(client, services, make_host, make_container):
    host = await make_host()
    container = await make_container(host_id=host.id)

    with patch.object(
        services.engine,
        "update_one",
        AsyncMock(return_value={"ok": False, "reason": "pull failed"}),
    ):
        response = await client.post(f"/api/v1/containers/{container.id}/update")

    data = response.json()
    assert data == {"op_id": data["op_id"], "ok": False, "reason": "pull failed"}
    operation = (await client.get(f"/api/v1/operations/{data['op_id']}")).json()
    assert operation["status"] == OperationStatus.ERROR


@pytest.mark.asyncio
async def test_stop_container_over_ssh(client, fake_executor, make_host, make_container):
    """Test stop runs docker stop on the container's host and logs the step."""
    host = await make_host()
    container = await make_container(host_id=host.id, name="web")

    response = await client.post(f"/api/v1/containers/{container.id}/stop")

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert fake_executor.ran(rf"docker stop {container.container_id}")

    entries = (await client.get(f"/api/v1/operations/{data['op_id']}/entries")).json()
    assert any("docker stop web" in e["content"] for e in entries)


@pytest.mark.asyncio
async def test_action_with_unknown_op_id_returns_404(client, make_host, make_container):
    host = await make_host()
    container = await make_container(host_id=host.id)

    response = await client.post(
        f"/api/v1/containers/{container.id}/restart", json={"op_id": "does-not-exist"}
    )

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_action_reuses_existing_operation(client, services, make_host, make_container):
    """Test a caller-supplied op_id collects the action's output."""
    host = await make_host()
    container = await make_container(host_id=host.id, name="web")
    op_id = await services.log_service.create_operation("Maintenance window")

    response = await client.post(
        f"/api/v1/containers/{container.id}/start", json={"op_id": op_id}
    )

    assert response.json()["op_id"] == op_id
    entries = (await client.get(f"/api/v1/operations/{op_id}/entries")).json()
    assert any("docker start web" in e["content"] for e in entries)


@pytest.mark.asyncio
async def test_discover_unknown_host_returns_404(client):
    response = await client.post("/api/v1/containers/discover", json={"host_id": 9999})

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_discover_failure_marks_operation_error(client, services, fake_executor, make_host):
    host = await make_host()
    fake_executor.on(r"docker ps -a", fail("Cannot connect to the Docker daemon"))

    response = await client.post("/api/v1/containers/discover", json={"host_id": host.id})

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is False
    assert data["failed"][0]["host_id"] == host.id
    operation = await services.log_service.get_operation(data["op_id"])
    assert operation.status == OperationStatus.ERROR


@pytest.mark.asyncio
async def test_operation_entries_persisted_before_terminal_status(services):
    """Test an action's output is stored before its operation turns terminal."""
    from fleetdock.dependencies import run_as_operation

    calls = []
    log_service = services.log_service
    original_append = log_service.append_entries
    original_status = log_service.update_status

    async def append(op_id, entries):
        calls.append("append")
        return await original_append(op_id, entries)

    async def update_status(op_id, new_status):
        calls.append(new_status)
        return await original_status(op_id, new_status)

    async def action(reporter):
        await reporter.info("working")
        return {"ok": True}

    with patch.object(log_service, "append_entries", append), patch.object(
        log_service, "update_status", update_status
    ):
        op_id, _ = await run_as_operation(services, "Ordered", action)

    assert calls == [OperationStatus.RUNNING, "append", OperationStatus.COMPLETED]
    entries = await services.log_service.list_entries(op_id)
    assert [e.content for e in entries] == ["working"]


@pytest.mark.asyncio
async def test_compose_operate(client, fake_executor, make_host):
    host = await make_host()
    fake_executor.on(r"docker compose pull", ok("Pulled\n"))

    response = await client.post(
        "/api/v1/compose/operate",
        json={
            "host_id": host.id,
            "project": "media",
            "working_dir": "/opt/media",
            "operation": "pull",
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert fake_executor.ran(r"cd /opt/media && docker compose pull")


@pytest.mark.asyncio
async def test_compose_operate_rejects_unknown_verb(client, make_host):
    host = await make_host()

    response = await client.post(
        "/api/v1/compose/operate",
        json={
            "host_id": host.id,
            "project": "media",
            "working_dir": "/opt/media",
            "operation": "rm",
        },
    )

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_create_task_and_read_entries(client, fake_executor, make_host):
    """Test a task is accepted, runs in the background and persists its output."""
    host = await make_host()
    fake_executor.on(r"uptime", ok(" 10:00:00 up 3 days\n"))

    response = await client.post(
        "/api/v1/tasks/", json={"command": "uptime", "host_ids": [host.id]}
    )

    assert response.status_code == status.HTTP_202_ACCEPTED
    op_id = response.json()["op_id"]

    operation = await _wait_for_operation(client, op_id)
    assert operation["status"] == OperationStatus.COMPLETED
    assert operation["command"] == "uptime"

    entries = (await client.get(f"/api/v1/operations/{op_id}/entries")).json()
    contents = [e["content"] for e in entries]
    assert contents[0].startswith("Task started")
    assert any("up 3 days" in c for c in contents)
    assert [e["seq"] for e in entries] == list(range(1, len(entries) + 1))


@pytest.mark.asyncio
async def test_failing_task_ends_in_error(client, fake_executor, make_host):
    host = await make_host()
    fake_executor.on(r"false", fail("", exit_code=1))

    response = await client.post("/api/v1/tasks/", json={"command": "false", "host_ids": [host.id]})

    operation = await _wait_for_operation(client, response.json()["op_id"])
    assert operation["status"] == OperationStatus.ERROR


@pytest.mark.asyncio
async def test_create_task_validation(client):
    response = await client.post("/api/v1/tasks/", json={"command": "uptime", "host_ids": []})

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_operation_not_found(client):
    for path in ("", "/entries", "/stream"):
        response = await client.get(f"/api/v1/operations/missing{path}")
        assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_list_operations_newest_first(client, services):
    first = await services.log_service.create_operation("first")
    second = await services.log_service.create_operation("second")

    response = await client.get("/api/v1/operations/?limit=1")

    assert [op["id"] for op in response.json()] == [second]
    assert first != second


@pytest.mark.asyncio
async def test_stream_replays_finished_operation(client, services):
    """Test a finished operation replays its entries and ends the stream."""
    op_id = await services.log_service.create_operation("Replay me")
    await services.log_service.append_entries(
        op_id,
        [
            {"stream": "info", "content": "step one"},
            {"stream": "stderr", "content": "warning: slow"},
        ],
    )
    await services.log_service.update_status(op_id, OperationStatus.COMPLETED)

    response = await client.get(f"/api/v1/operations/{op_id}/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    messages = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert [m["event"] for m in messages] == ["data", "stderr", "end"]
    assert messages[0]["data"]["content"] == "step one"
    assert messages[0]["data"]["replay"] is True
    assert messages[-1]["data"]["status"] == OperationStatus.COMPLETED


@pytest.mark.asyncio
async def test_host_connection_test(client, fake_executor, make_host):
    host = await make_host()
    fake_executor.on(r"echo ok", ok("ok\n"))

    response = await client.post(f"/api/v1/hosts/{host.id}/test-connection")

    assert response.status_code == 200
    assert response.json()["ok"] is True


@pytest.mark.asyncio
async def test_host_connection_test_unknown_host(client):
    response = await client.post("/api/v1/hosts/9999/test-connection")

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_unhandled_domain_error_maps_to_400(client, services):
    """Test a FleetdockError escaping a route becomes a 400 with its message."""
    from fleetdock.exceptions import CredentialError

    with patch.object(
        services.checker, "check_updates", AsyncMock(side_effect=CredentialError("cannot decrypt"))
    ):
        response = await client.post("/api/v1/containers/check-updates", json={})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"detail": "cannot decrypt"}
