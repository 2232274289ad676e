"""Docker container engine implementation."""

import logging
from collections.abc import AsyncIterator
from contextlib import contextmanager
from datetime import UTC, datetime

import httpx

from katanaci.app.config import get_settings
from katanaci.core.interfaces import (
    ContainerEngine,
    ContainerSpec,
    ContainerState,
    EngineError,
    EngineNotFoundError,
)
from katanaci.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    ImageAPI,
    demux_log_stream,
    get_docker_client,
    publish_port,
)

logger = logging.getLogger(__name__)


@contextmanager
def _engine_call(operation: str, container_id: str = ""):
    """Translate transport and API failures into EngineError."""
    try:
        yield
    except httpx.HTTPStatusError as exc:
        raise EngineError(
            f"{operation} {container_id[:12]} failed: "
            f"{exc.response.status_code} {exc.response.text[:200]}"
        ) from exc
    except httpx.HTTPError as exc:
        raise EngineError(f"{operation} {container_id[:12]} failed: {exc!r}") from exc


def _parse_created(value: str | int | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, int):
        return datetime.fromtimestamp(value, tz=UTC)
    # Docker emits RFC 3339 with nanoseconds; fromisoformat accepts microseconds
    head, _, frac = value.rstrip("Z").partition(".")
    if frac:
        head = f"{head}.{frac[:6]}"
    try:
        return datetime.fromisoformat(head).replace(tzinfo=UTC)
    except ValueError:
        return None


async def _close_after(
    response: httpx.Response, chunks: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            yield chunk
    finally:
        await response.aclose()


class DockerContainerEngine(ContainerEngine):
    """ContainerEngine backed by the Docker Engine API."""

    def __init__(
        self,
        client: DockerClient | None = None,
        containers: ContainerAPI | None = None,
        images: ImageAPI | None = None,
    ) -> None:
        self._docker = get_settings().docker
        self._client = client or get_docker_client()
        self._containers = containers or ContainerAPI(self._client)
        self._images = images or ImageAPI(self._client)

    async def create(self, spec: ContainerSpec) -> str:
        exposed_ports, host_config = publish_port(spec.port, self._docker.publish_ip)
        config = ContainerConfig(
            image=spec.image,
            name=spec.name,
            cmd=spec.cmd,
            labels=spec.labels,
            exposed_ports=exposed_ports,
            host_config=host_config,
        )
        with _engine_call("create", spec.name):
            await self._images.ensure(spec.image)
            return await self._containers.create(config)

    async def start(self, container_id: str) -> None:
        with _engine_call("start", container_id):
            await self._containers.start(container_id)

    async def remove(self, container_id: str) -> None:
        """Stop then force-remove; both steps treat 404 as done."""
        with _engine_call("remove", container_id):
            await self._containers.stop(container_id, timeout=self._docker.stop_timeout)
            await self._containers.remove(container_id, force=True)

    async def inspect(self, container_id: str) -> ContainerState | None:
        with _engine_call("inspect", container_id):
            data = await self._containers.inspect(container_id)
        if data is None:
            return None

        state = data.get("State", {})
        config = data.get("Config", {})
        return ContainerState(
            container_id=data.get("Id", container_id),
            running=bool(state.get("Running", False)),
            status=state.get("Status", "unknown"),
            labels=config.get("Labels") or {},
            created_at=_parse_created(data.get("Created")),
            tty=bool(config.get("Tty", False)),
        )

    async def list_managed(self, label: str) -> list[ContainerState]:
        with _engine_call("list"):
            containers = await self._containers.list(filters={"label": [label]})

        return [
            ContainerState(
                container_id=container["Id"],
                running=container.get("State") == "running",
                status=container.get("Status", ""),
                labels=container.get("Labels") or {},
                created_at=_parse_created(container.get("Created")),
            )
            for container in containers
        ]

    async def logs(self, container_id: str, tail: int | None) -> AsyncIterator[bytes]:
        state = await self.inspect(container_id)
        if state is None:
            raise EngineNotFoundError(container_id)

        with _engine_call("logs", container_id):
            response = await self._containers.open_logs(container_id, tail=tail)
        if response is None:
            raise EngineNotFoundError(container_id)

        if state.tty:
            return _close_after(response, response.aiter_raw())
        return _close_after(response, demux_log_stream(response.aiter_raw()))

    async def ping(self) -> None:
        with _engine_call("ping"):
            await self._client.ping()
