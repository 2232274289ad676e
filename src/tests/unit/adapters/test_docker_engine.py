"""Unit tests for DockerContainerEngine."""

import struct
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from katanaci.adapters.docker import DockerContainerEngine, _parse_created
from katanaci.core.interfaces import ContainerSpec, EngineError, EngineNotFoundError


class _Chunks(httpx.AsyncByteStream):
    def __init__(self, parts: list[bytes]) -> None:
        self._parts = parts

    async def __aiter__(self):
        for part in self._parts:
            yield part


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://docker/containers/create")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(status, request=request)
    )


def _inspect_payload(tty: bool = False) -> dict:
    return {
        "Id": "c" * 64,
        "Created": "2026-01-02T03:04:05.123456789Z",
        "State": {"Running": True, "Status": "running"},
        "Config": {"Labels": {"katana-ci.instance": "abc"}, "Tty": tty},
    }


SPEC = ContainerSpec(
    name="katana-ci-0123456789ab",
    image="katana:latest",
    cmd=["katana", "--port", "10500", "--disable-fee"],
    port=10500,
    labels={"katana-ci.instance": "0123456789ab"},
)


class TestDockerContainerEngine:
    @pytest.fixture
    def mock_containers(self) -> AsyncMock:
        mock = AsyncMock()
        mock.inspect = AsyncMock(return_value=_inspect_payload())
        mock.create = AsyncMock(return_value="c" * 64)
        return mock

    @pytest.fixture
    def mock_images(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def mock_client(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def docker_engine(self, mock_client, mock_containers, mock_images) -> DockerContainerEngine:
        return DockerContainerEngine(
            client=mock_client, containers=mock_containers, images=mock_images
        )

    async def test_create_publishes_port(
        self, docker_engine, mock_containers, mock_images
    ) -> None:
        assert await docker_engine.create(SPEC) == "c" * 64

        mock_images.ensure.assert_awaited_once_with("katana:latest")
        config = mock_containers.create.await_args.args[0]
        assert config.name == SPEC.name
        assert config.cmd == SPEC.cmd
        assert config.labels == SPEC.labels
        assert config.exposed_ports == {"10500/tcp": {}}
        assert config.host_config.port_bindings["10500/tcp"][0]["HostPort"] == "10500"

    async def test_create_http_error(self, docker_engine, mock_containers) -> None:
        mock_containers.create.side_effect = _status_error(409)
        with pytest.raises(EngineError, match="409"):
            await docker_engine.create(SPEC)

    async def test_transport_error(self, docker_engine, mock_containers) -> None:
        mock_containers.start.side_effect = httpx.ConnectError("socket missing")
        with pytest.raises(EngineError):
            await docker_engine.start("c" * 64)

    async def test_remove_stops_then_removes(self, docker_engine, mock_containers) -> None:
        await docker_engine.remove("abc")
        mock_containers.stop.assert_awaited_once()
        mock_containers.remove.assert_awaited_once_with("abc", force=True)

    async def test_inspect_maps_state(self, docker_engine) -> None:
        state = await docker_engine.inspect("c" * 64)

        assert state is not None
        assert state.running
        assert state.status == "running"
        assert state.labels == {"katana-ci.instance": "abc"}
        assert state.created_at == datetime(2026, 1, 2, 3, 4, 5, 123456, tzinfo=UTC)
        assert not state.tty

    async def test_inspect_missing(self, docker_engine, mock_containers) -> None:
        mock_containers.inspect.return_value = None
        assert await docker_engine.inspect("gone") is None

    async def test_list_managed(self, docker_engine, mock_containers) -> None:
        mock_containers.list.return_value = [
            {
                "Id": "a" * 64,
                "State": "running",
                "Status": "Up 2 minutes",
                "Labels": {"katana-ci.instance": "abc"},
                "Created": 1767323045,
            },
            {"Id": "b" * 64, "State": "exited", "Labels": None},
        ]

        states = await docker_engine.list_managed("katana-ci.instance")

        mock_containers.list.assert_awaited_once_with(
            filters={"label": ["katana-ci.instance"]}
        )
        assert [s.running for s in states] == [True, False]
        assert states[0].created_at == datetime.fromtimestamp(1767323045, tz=UTC)
        assert states[1].labels == {}
        assert states[1].created_at is None

    async def test_logs_demultiplexed(self, docker_engine, mock_containers) -> None:
        body = struct.pack(">BxxxL", 1, 6) + b"hello\n"
        response = httpx.Response(200, stream=_Chunks([body[:5], body[5:]]))
        mock_containers.open_logs.return_value = response

        chunks = await docker_engine.logs("c" * 64, 10)
        assert b"".join([c async for c in chunks]) == b"hello\n"
        mock_containers.open_logs.assert_awaited_once_with("c" * 64, tail=10)
        assert response.is_closed

    async def test_logs_tty_passthrough(self, docker_engine, mock_containers) -> None:
        mock_containers.inspect.return_value = _inspect_payload(tty=True)
        mock_containers.open_logs.return_value = httpx.Response(
            200, stream=_Chunks([b"raw output\n"])
        )

        chunks = await docker_engine.logs("c" * 64, None)
        assert b"".join([c async for c in chunks]) == b"raw output\n"

    async def test_logs_missing_container(self, docker_engine, mock_containers) -> None:
        mock_containers.inspect.return_value = None
        with pytest.raises(EngineNotFoundError):
            await docker_engine.logs("gone", 25)
        mock_containers.open_logs.assert_not_called()

    async def test_ping(self, docker_engine, mock_client) -> None:
        mock_client.ping.side_effect = httpx.ConnectError("refused")
        with pytest.raises(EngineError):
            await docker_engine.ping()


class TestParseCreated:
    def test_rfc3339_nanoseconds(self) -> None:
        assert _parse_created("2026-01-02T03:04:05.987654321Z") == datetime(
            2026, 1, 2, 3, 4, 5, 987654, tzinfo=UTC
        )

    def test_epoch(self) -> None:
        assert _parse_created(0) == datetime(1970, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "not a date"])
    def test_unparseable(self, value) -> None:
        assert _parse_created(value) is None
