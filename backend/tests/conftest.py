"""Pytest configuration and fixtures."""

import os
import re
from typing import Any, AsyncGenerator, Callable, List, Optional, Union

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing fleetdock.db
# This prevents the module from trying to create /data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# Set encryption key for tests
if "FLEETDOCK_ENCRYPTION_KEY" not in os.environ:
    os.environ["FLEETDOCK_ENCRYPTION_KEY"] = "fleetdock-test-key"

from fleetdock.db import Base  # noqa: E402
from fleetdock.models import *  # noqa: E402,F401,F403  Import all models to ensure they're registered
from fleetdock.models.container import Container  # noqa: E402
from fleetdock.models.host import Host  # noqa: E402
from fleetdock.services.ssh_executor import ExecOptions, ExecResult, SSHTarget  # noqa: E402

Response = Union[ExecResult, Callable[[str], ExecResult], List[Any]]


class FakeExecutor:
    """Scripted stand-in for RemoteExecutor.

    Responses are registered with :meth:`on` as (regex, response) pairs and
    matched in registration order against the full command string. A
    response may be an ExecResult, a callable taking the command, or a list
    that is consumed one item per call (the last item repeats). Unmatched
    commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[tuple[SSHTarget, str]] = []
        self.options: List[Optional[ExecOptions]] = []
        self._rules: List[tuple[re.Pattern, Response]] = []

    def on(self, pattern: str, response: Response) -> "FakeExecutor":
        self._rules.append((re.compile(pattern), response))
        return self

    @property
    def commands(self) -> List[str]:
        return [command for _, command in self.calls]

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, command) for command in self.commands)

    def _respond(self, command: str) -> ExecResult:
        for pattern, response in self._rules:
            if not pattern.search(command):
                continue
            if isinstance(response, list):
                item = response.pop(0) if len(response) > 1 else response[0]
            else:
                item = response
            if callable(item):
                item = item(command)
            return ExecResult(
                exit_code=item.exit_code,
                stdout=item.stdout,
                stderr=item.stderr,
                transport_error=item.transport_error,
                timed_out=item.timed_out,
            )
        return ExecResult(exit_code=0)

    async def execute(
        self, target: SSHTarget, command: str, options: Optional[ExecOptions] = None
    ) -> ExecResult:
        self.calls.append((target, command))
        self.options.append(options)
        return self._respond(command)

    async def execute_streaming(
        self,
        target: SSHTarget,
        command: str,
        on_stdout=None,
        on_stderr=None,
        options: Optional[ExecOptions] = None,
    ) -> ExecResult:
        self.calls.append((target, command))
        self.options.append(options)
        result = self._respond(command)
        if result.stdout and on_stdout:
            await on_stdout(result.stdout)
        if result.stderr and on_stderr:
            await on_stderr(result.stderr)
        return result


def ok(stdout: str = "") -> ExecResult:
    return ExecResult(exit_code=0, stdout=stdout)


def fail(stderr: str = "error", exit_code: int = 1) -> ExecResult:
    return ExecResult(exit_code=exit_code, stderr=stderr)


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    """Session factory bound to the test engine, as services receive it."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_host(session_factory):
    """Factory fixture persisting Host rows with sensible defaults.

    Usage:
        host = await make_host(name="edge-1", address="10.0.0.5")
    """
    counter = {"n": 0}

    async def _make_host(**kwargs) -> Host:
        counter["n"] += 1
        defaults = {
            "name": f"host-{counter['n']}",
            "address": f"10.0.0.{counter['n']}",
            "ssh_user": "root",
            "port": 22,
            "auth_method": "password",
            "ssh_password": "secret-pw",
            "tags": [],
            "role": "remote",
        }
        host = Host(**{**defaults, **kwargs})
        async with session_factory() as db:
            db.add(host)
            await db.commit()
            await db.refresh(host)
        return host

    return _make_host


@pytest.fixture
def make_container(session_factory):
    """Factory fixture persisting Container rows.

    Usage:
        container = await make_container(host_id=host.id, name="web")
    """
    counter = {"n": 0}

    async def _make_container(**kwargs) -> Container:
        counter["n"] += 1
        n = counter["n"]
        defaults = {
            "container_id": f"{n:012x}" + "a" * 52,
            "name": f"container-{n}",
            "state": "running",
            "status": "Up 2 hours",
            "image_name": "nginx",
            "image_tag": "latest",
            "repo_digest": "sha256:" + "1" * 64,
            "repo_digests": [],
            "update_available": False,
            "is_compose_managed": False,
        }
        container = Container(**{**defaults, **kwargs})
        async with session_factory() as db:
            db.add(container)
            await db.commit()
            await db.refresh(container)
        return container

    return _make_container


@pytest.fixture
def services(session_factory, fake_executor):
    """Fully wired service graph over the fake executor."""
    from fleetdock.dependencies import build_services
    from fleetdock.services.event_bus import EventBus

    graph = build_services(session_factory, executor=fake_executor, event_bus=EventBus())
    # no real backoff sleeps in tests
    graph.docker.base_delay = 0
    graph.docker.max_delay = 0
    return graph


@pytest.fixture
async def app(services):
    """FastAPI app with the test service graph attached."""
    from fleetdock.main import app as application

    application.state.services = services
    yield application
    del application.state.services


@pytest.fixture
async def client(app):
    """Async test client (lifespan is not run; services are injected)."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", follow_redirects=True
    ) as ac:
        yield ac
