"""Container engine interface.

The lifecycle manager, router and reconciler receive a ContainerEngine
explicitly; tests substitute an in-memory implementation.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime


class EngineError(Exception):
    """Container engine unreachable or refused the request."""


class EngineNotFoundError(EngineError):
    """The engine definitively reports the container as absent."""

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        super().__init__(f"Container not found: {container_id}")


@dataclass(frozen=True)
class ContainerSpec:
    """What to run for one instance."""

    name: str
    image: str
    cmd: list[str]
    port: int
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerState:
    """Container observation result."""

    container_id: str
    running: bool
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None
    tty: bool = False


class ContainerEngine(ABC):
    """Interface for the container engine.

    Implementations: DockerContainerEngine
    """

    @abstractmethod
    async def create(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container.

        Returns:
            Container ID
        """
        ...

    @abstractmethod
    async def start(self, container_id: str) -> None: ...

    @abstractmethod
    async def remove(self, container_id: str) -> None:
        """Stop and remove a container.

        Idempotent: a container that is already gone is not an error.
        """
        ...

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerState | None:
        """Observe one container.

        Returns:
            ContainerState, or None if the engine reports it missing
        """
        ...

    @abstractmethod
    async def list_managed(self, label: str) -> list[ContainerState]:
        """Observe all containers carrying the given label key."""
        ...

    @abstractmethod
    async def logs(self, container_id: str, tail: int | None) -> AsyncIterator[bytes]:
        """Open the log stream of a container.

        Args:
            container_id: Container ID
            tail: Number of trailing lines, or None for the full history

        Returns:
            Async iterator of plain log bytes (stream headers removed)

        Raises:
            EngineNotFoundError: Container does not exist
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise EngineError if the engine is unreachable."""
        ...
