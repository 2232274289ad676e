"""Shared fixtures for katana-ci unit tests.

The container engine is an in-memory fake; the datastore is a temporary
SQLite file.
"""

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest
from httpx import ASGITransport, AsyncClient

from katanaci.app.api.dependencies import Services, build_services
from katanaci.app.config import get_settings
from katanaci.core.interfaces import (
    ContainerEngine,
    ContainerSpec,
    ContainerState,
    EngineNotFoundError,
)
from katanaci.infra.cache import clear_tenant_cache
from katanaci.infra.database import close_db, get_session_factory, init_db
from katanaci.infra.models import Tenant

TEST_IMAGE = "ghcr.io/dojoengine/katana:test"
ALICE_KEY = "alice-key"
BOB_KEY = "bob-key"


@dataclass
class FakeContainer:
    spec: ContainerSpec
    state: ContainerState
    log_lines: list[str] = field(default_factory=list)


class FakeEngine(ContainerEngine):
    """In-memory ContainerEngine.

    Set ``fail_<operation>`` to an exception to make that operation raise.
    """

    def __init__(self, log_lines: int = 100) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.removed: list[str] = []
        self.log_lines = log_lines
        self.fail_create: Exception | None = None
        self.fail_start: Exception | None = None
        self.fail_remove: Exception | None = None
        self.fail_inspect: Exception | None = None
        self.fail_list: Exception | None = None
        self.fail_ping: Exception | None = None

    @property
    def running(self) -> list[FakeContainer]:
        return [c for c in self.containers.values() if c.state.running]

    async def create(self, spec: ContainerSpec) -> str:
        if self.fail_create:
            raise self.fail_create
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        self.containers[container_id] = FakeContainer(
            spec=spec,
            state=ContainerState(
                container_id=container_id,
                running=False,
                status="created",
                labels=dict(spec.labels),
                created_at=datetime.now(UTC),
            ),
            log_lines=[f"line {i}\n" for i in range(self.log_lines)],
        )
        return container_id

    async def start(self, container_id: str) -> None:
        if self.fail_start:
            raise self.fail_start
        container = self.containers.get(container_id)
        if container is None:
            raise EngineNotFoundError(container_id)
        container.state.running = True
        container.state.status = "running"

    async def remove(self, container_id: str) -> None:
        if self.fail_remove:
            raise self.fail_remove
        if self.containers.pop(container_id, None) is not None:
            self.removed.append(container_id)

    async def inspect(self, container_id: str) -> ContainerState | None:
        if self.fail_inspect:
            raise self.fail_inspect
        container = self.containers.get(container_id)
        return container.state if container else None

    async def list_managed(self, label: str) -> list[ContainerState]:
        if self.fail_list:
            raise self.fail_list
        return [c.state for c in self.containers.values() if label in c.state.labels]

    async def logs(self, container_id: str, tail: int | None) -> AsyncIterator[bytes]:
        container = self.containers.get(container_id)
        if container is None:
            raise EngineNotFoundError(container_id)
        lines = container.log_lines
        if tail is not None:
            lines = lines[-tail:] if tail else []

        async def stream() -> AsyncIterator[bytes]:
            for line in lines:
                yield line.encode()

        return stream()

    async def ping(self) -> None:
        if self.fail_ping:
            raise self.fail_ping


@pytest.fixture(autouse=True)
def setup_test_env(tmp_path, monkeypatch):
    """Isolate settings and caches per test."""
    monkeypatch.setenv("KATANA_CI_IMAGE", TEST_IMAGE)
    monkeypatch.setenv("KATANACI_DATABASE__URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.delenv("KATANA_CI_USERS_FILE", raising=False)
    get_settings.cache_clear()
    clear_tenant_cache()
    yield
    get_settings.cache_clear()
    clear_tenant_cache()


@pytest.fixture
async def db(tmp_path):
    """Initialized database; yields the session factory."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'katanaci.db'}")
    yield get_session_factory()
    await close_db()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def services(db, engine: FakeEngine) -> Services:
    return build_services(get_settings(), db, engine)


@pytest.fixture
async def alice(services: Services) -> Tenant:
    return await services.credentials.add("alice", ALICE_KEY)


@pytest.fixture
async def bob(services: Services) -> Tenant:
    return await services.credentials.add("bob", BOB_KEY)


@pytest.fixture
async def client(services: Services) -> AsyncIterator[AsyncClient]:
    """HTTP client against the app with test services installed."""
    from katanaci.app.main import app

    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    del app.state.services


@pytest.fixture
def alice_headers(alice: Tenant) -> dict[str, str]:
    return {"Authorization": f"Bearer {alice.api_key}"}


@pytest.fixture
def bob_headers(bob: Tenant) -> dict[str, str]:
    return {"Authorization": f"Bearer {bob.api_key}"}
