"""Thin async client for the Docker Engine API.

Talks to the engine over its unix socket (or TCP, e.g. a docker socket
proxy) with httpx. Only the endpoints katana-ci needs are wrapped.

Configuration via DockerConfig (KATANACI_DOCKER__ env prefix, DOCKER_HOST).
"""

import json
import logging
import struct
from collections.abc import AsyncIterator, Collection

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

from katanaci.app.config import get_settings

logger = logging.getLogger(__name__)

# Multiplexed log frame header: stream type (1 byte), 3 padding bytes, size (uint32 BE)
_FRAME_HEADER = struct.Struct(">BxxxL")


# =============================================================================
# Request bodies
# =============================================================================


class _EngineModel(BaseModel):
    """Snake-case fields serialized under the engine's PascalCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_pascal, populate_by_name=True)

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, exclude_defaults=True)


class HostConfig(_EngineModel):
    port_bindings: dict[str, list[dict[str, str]]] = {}


class ContainerConfig(_EngineModel):
    """Body of POST /containers/create; the name travels as a query parameter."""

    name: str = Field(exclude=True)
    image: str
    cmd: list[str] = []
    labels: dict[str, str] = {}
    exposed_ports: dict[str, dict] = {}
    host_config: HostConfig = HostConfig()


def publish_port(port: int, host_ip: str) -> tuple[dict, HostConfig]:
    """Expose a TCP port and publish it on the same host port.

    Returns:
        (exposed_ports, host_config) pair for ContainerConfig
    """
    key = f"{port}/tcp"
    return {key: {}}, HostConfig(
        port_bindings={key: [{"HostIp": host_ip, "HostPort": str(port)}]}
    )


def split_image_ref(image_ref: str) -> tuple[str, str]:
    """Split an image reference into (repository, tag).

    A colon only separates a tag when it appears after the last slash, so
    registry ports (``localhost:5000/katana``) are kept in the repository.
    """
    if "@" in image_ref:
        return image_ref, ""
    repository, sep, tag = image_ref.rpartition(":")
    if not sep or "/" in tag:
        return image_ref, "latest"
    return repository, tag


# =============================================================================
# Connection
# =============================================================================


class DockerClient:
    """Lazily connected engine client.

    The underlying httpx client is rebuilt after close(), so one instance
    survives event loop changes in tests.
    """

    def __init__(
        self, docker_host: str | None = None, timeout: float | None = None
    ) -> None:
        config = get_settings().docker
        self._host = docker_host or config.host
        self._timeout = timeout if timeout is not None else config.api_timeout
        self._client: httpx.AsyncClient | None = None

    def _connect(self) -> httpx.AsyncClient:
        scheme, _, location = self._host.partition("://")
        if scheme == "unix":
            return httpx.AsyncClient(
                transport=httpx.AsyncHTTPTransport(uds=location),
                base_url="http://docker",
                timeout=self._timeout,
            )
        if scheme == "tcp":
            return httpx.AsyncClient(base_url=f"http://{location}", timeout=self._timeout)
        return httpx.AsyncClient(base_url=self._host, timeout=self._timeout)

    async def get(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = self._connect()
        return self._client

    async def call(
        self, method: str, path: str, *, tolerate: Collection[int] = (), **kwargs
    ) -> httpx.Response:
        """Send one request and read the whole body.

        Raises:
            httpx.HTTPStatusError: 4xx/5xx not listed in tolerate
        """
        client = await self.get()
        resp = await client.request(method, path, **kwargs)
        if resp.is_error and resp.status_code not in tolerate:
            resp.raise_for_status()
        return resp

    async def ping(self) -> None:
        await self.call("GET", "/_ping")

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


_docker_client: DockerClient | None = None


def get_docker_client() -> DockerClient:
    """Process-wide DockerClient."""
    global _docker_client
    if _docker_client is None:
        _docker_client = DockerClient()
    return _docker_client


async def close_docker() -> None:
    global _docker_client
    if _docker_client is not None:
        await _docker_client.close()
        _docker_client = None


# =============================================================================
# Containers
# =============================================================================


class ContainerAPI:
    """Container endpoints. Names and IDs are interchangeable everywhere."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def list(self, filters: dict | None = None) -> list[dict]:
        """List containers, stopped ones included.

        Args:
            filters: Engine filters, e.g. {"label": ["katana-ci.instance"]}
        """
        params = {"all": "true"}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await self._docker.call("GET", "/containers/json", params=params)
        return resp.json()

    async def inspect(self, name: str) -> dict | None:
        resp = await self._docker.call("GET", f"/containers/{name}/json", tolerate={404})
        return None if resp.status_code == 404 else resp.json()

    async def create(self, config: ContainerConfig) -> str:
        """Create a container and return its ID.

        Raises:
            httpx.HTTPStatusError: Including 409 when the name is taken
        """
        resp = await self._docker.call(
            "POST", "/containers/create", params={"name": config.name}, json=config.to_api()
        )
        container_id = resp.json()["Id"]
        logger.info("Created container %s (%s)", config.name, container_id[:12])
        return container_id

    async def start(self, name: str) -> None:
        # 304: already running
        await self._docker.call("POST", f"/containers/{name}/start")

    async def stop(self, name: str, timeout: int = 10) -> None:
        """Stop a container, waiting up to timeout seconds before SIGKILL.

        An already stopped (304) or missing (404) container is fine.
        """
        await self._docker.call(
            "POST",
            f"/containers/{name}/stop",
            tolerate={404},
            params={"t": str(timeout)},
            # The engine answers only once the container is down
            timeout=get_settings().docker.api_timeout + timeout,
        )

    async def remove(self, name: str, force: bool = True) -> None:
        resp = await self._docker.call(
            "DELETE",
            f"/containers/{name}",
            tolerate={404},
            params={"force": "true" if force else "false"},
        )
        if resp.status_code != 404:
            logger.info("Removed container %s", name[:12])

    async def open_logs(self, name: str, tail: int | None = None) -> httpx.Response | None:
        """Open a streaming log response; the caller must close it.

        Args:
            tail: Trailing line count, None for the full history

        Returns:
            Streaming response (multiplexed unless the container has a TTY),
            or None if the container does not exist
        """
        client = await self._docker.get()
        params = {
            "stdout": "true",
            "stderr": "true",
            "tail": "all" if tail is None else str(tail),
        }
        request = client.build_request("GET", f"/containers/{name}/logs", params=params)
        resp = await client.send(request, stream=True)
        if resp.status_code == 404:
            await resp.aclose()
            return None
        if resp.is_error:
            await resp.aread()
            await resp.aclose()
            resp.raise_for_status()
        return resp


async def demux_log_stream(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Strip multiplexed stream headers from a Docker log stream.

    Frames may be split across chunks arbitrarily; payloads are yielded as
    soon as they are complete.
    """
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= _FRAME_HEADER.size:
            _stream, size = _FRAME_HEADER.unpack_from(buffer)
            end = _FRAME_HEADER.size + size
            if len(buffer) < end:
                break
            payload = bytes(buffer[_FRAME_HEADER.size : end])
            del buffer[:end]
            if payload:
                yield payload
    if buffer:
        logger.warning("Truncated log frame dropped (%d bytes)", len(buffer))


# =============================================================================
# Images
# =============================================================================


class ImageAPI:
    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def exists(self, image_ref: str) -> bool:
        resp = await self._docker.call("GET", f"/images/{image_ref}/json", tolerate={404})
        return resp.status_code == 200

    async def pull(self, image_ref: str) -> None:
        """Pull an image, reading the JSON progress stream to completion."""
        repository, tag = split_image_ref(image_ref)
        params = {"fromImage": repository}
        if tag:
            params["tag"] = tag

        logger.info("Pulling image %s", image_ref)
        await self._docker.call(
            "POST",
            "/images/create",
            params=params,
            timeout=get_settings().docker.image_pull_timeout,
        )
        logger.info("Pulled image %s", image_ref)

    async def ensure(self, image_ref: str) -> None:
        if not await self.exists(image_ref):
            await self.pull(image_ref)
