"""Instance lifecycle: start, stop, lookup and log access.

The Registry is authoritative for routing and ownership. Creation runs as a
compensating sequence (create -> start -> register) so that a container is
never left running without a row; the opposite divergence (row without a
container) is tolerated and healed lazily via forget_stale().
"""

import asyncio
import logging
import time
import weakref
from collections.abc import AsyncIterator

from pydantic import BaseModel, Field

from katanaci.app.logging import key_prefix
from katanaci.app.metrics.collector import (
    INSTANCES_LIVE,
    LIFECYCLE_OPERATION_DURATION,
    LIFECYCLE_OPERATIONS_TOTAL,
    ROLLBACKS_TOTAL,
)
from katanaci.core.errors import (
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    ResourceExhaustedError,
    UpstreamUnavailableError,
)
from katanaci.core.interfaces import (
    ContainerEngine,
    ContainerSpec,
    EngineError,
    EngineNotFoundError,
)
from katanaci.core.logging_schema import Component, ErrorClass, LogEvent
from katanaci.core.naming import container_name, is_instance_name, new_instance_name
from katanaci.infra.models import Instance, Tenant
from katanaci.services.ports import PortAllocator
from katanaci.services.registry import InstanceRegistry

logger = logging.getLogger(__name__)


class StartOptions(BaseModel):
    """Sequencer options accepted by /start."""

    block_time: int | None = Field(default=None, ge=0)  # milliseconds
    no_mining: bool | None = None

    def command(self, port: int) -> list[str]:
        cmd = ["katana", "--port", str(port), "--disable-fee"]
        if self.block_time is not None:
            cmd += ["--block-time", str(self.block_time)]
        if self.no_mining:
            cmd.append("--no-mining")
        return cmd


class LifecycleManager:
    """Creates and destroys instances for tenants.

    Args:
        registry: Instance registry
        ports: Port allocator sharing the same registry
        engine: Container engine capability
        image: Sequencer image reference
        container_prefix: Prefix of container names
        label: Label key carrying the instance name
        owner_label: Label key carrying the owner's tenant name
        name_max_attempts: Draws before giving up on a free name
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        ports: PortAllocator,
        engine: ContainerEngine,
        *,
        image: str,
        container_prefix: str = "katana-ci-",
        label: str = "katana-ci.instance",
        owner_label: str = "katana-ci.owner",
        name_max_attempts: int = 8,
    ) -> None:
        self._registry = registry
        self._ports = ports
        self._engine = engine
        self._image = image
        self._container_prefix = container_prefix
        self._label = label
        self._owner_label = owner_label
        self._name_max_attempts = name_max_attempts
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def engine(self) -> ContainerEngine:
        return self._engine

    def _lock(self, instance_name: str) -> asyncio.Lock:
        """Per-name lock, kept alive only while someone holds a reference."""
        lock = self._locks.get(instance_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_name] = lock
        return lock

    async def _draw_name(self) -> str:
        for _ in range(self._name_max_attempts):
            name = new_instance_name()
            if not await self._registry.exists(name):
                return name
        raise ResourceExhaustedError("Could not draw a free instance name")

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, tenant: Tenant, options: StartOptions | None = None) -> Instance:
        """Create, start and register a new instance.

        Raises:
            ResourceExhaustedError: No free port or name
            UpstreamUnavailableError: Container engine failure
        """
        options = options or StartOptions()
        started = time.perf_counter()

        async with self._ports.reserve() as port:
            name = await self._draw_name()
            spec = ContainerSpec(
                name=container_name(self._container_prefix, name),
                image=self._image,
                cmd=options.command(port),
                port=port,
                labels={self._label: name, self._owner_label: tenant.user_name},
            )

            async with self._lock(name):
                try:
                    container_id = await self._engine.create(spec)
                except EngineError as exc:
                    self._record("start", "error", started)
                    raise UpstreamUnavailableError(
                        "Container engine failed to create the instance"
                    ) from exc

                instance = Instance(
                    instance_name=name,
                    container_id=container_id,
                    api_key=tenant.api_key,
                    proxied_port=port,
                )
                try:
                    await self._engine.start(container_id)
                    await self._registry.add(instance)
                except BaseException as exc:
                    await self._rollback(container_id, name, exc)
                    self._record("start", "error", started)
                    if isinstance(exc, EngineError):
                        raise UpstreamUnavailableError(
                            "Container engine failed to start the instance"
                        ) from exc
                    if isinstance(exc, InstanceAlreadyExistsError):
                        raise ResourceExhaustedError(
                            "Instance name or port was taken concurrently, retry"
                        ) from exc
                    raise

        self._record("start", "success", started)
        INSTANCES_LIVE.inc()
        logger.info(
            "Instance started: %s on port %d",
            name,
            port,
            extra={
                "event": LogEvent.INSTANCE_STARTED,
                "component": Component.LIFECYCLE,
                "instance": name,
                "container_id": container_id[:12],
                "tenant": tenant.user_name,
                "key_prefix": key_prefix(tenant.api_key),
                "port": port,
            },
        )
        return instance

    async def _rollback(
        self, container_id: str, instance_name: str, cause: BaseException
    ) -> None:
        """Force-remove a container that must not outlive a failed start.

        Never raises: the original failure is what the caller sees.
        """
        try:
            await self._engine.remove(container_id)
        except Exception as exc:
            ROLLBACKS_TOTAL.labels(result="error").inc()
            logger.error(
                "Rollback failed, container %s may be orphaned",
                container_id[:12],
                extra={
                    "event": LogEvent.ROLLBACK_FAILED,
                    "component": Component.LIFECYCLE,
                    "instance": instance_name,
                    "container_id": container_id[:12],
                    "cause": repr(cause),
                    "error": repr(exc),
                },
            )
            return

        ROLLBACKS_TOTAL.labels(result="success").inc()
        logger.warning(
            "Rolled back container %s after failed start",
            container_id[:12],
            extra={
                "event": LogEvent.ROLLBACK_COMPLETE,
                "component": Component.LIFECYCLE,
                "instance": instance_name,
                "container_id": container_id[:12],
                "cause": repr(cause),
            },
        )

    # =========================================================================
    # Lookup
    # =========================================================================

    async def resolve(self, tenant: Tenant, instance_name: str) -> Instance:
        """Ownership-checked lookup.

        Raises:
            InstanceNotFoundError: Unknown name, or owned by another tenant
        """
        if not is_instance_name(instance_name):
            raise InstanceNotFoundError()

        instance = await self._registry.get(instance_name)
        if instance is None or instance.api_key != tenant.api_key:
            raise InstanceNotFoundError()
        return instance

    async def forget_stale(self, instance: Instance) -> None:
        """Drop a row whose container the engine reports as gone."""
        if await self._registry.forget(instance.instance_name, instance.container_id):
            INSTANCES_LIVE.dec()
            logger.warning(
                "Removed stale instance %s, container is gone",
                instance.instance_name,
                extra={
                    "event": LogEvent.INSTANCE_STALE,
                    "component": Component.LIFECYCLE,
                    "instance": instance.instance_name,
                    "container_id": instance.container_id[:12],
                },
            )

    async def diagnose_unreachable(self, instance: Instance) -> None:
        """Classify an instance whose port refused a connection.

        Always raises.

        Raises:
            InstanceNotFoundError: Container is gone (row removed)
            UpstreamUnavailableError: Container exists, or engine unreachable
        """
        try:
            state = await self._engine.inspect(instance.container_id)
        except EngineError as exc:
            raise UpstreamUnavailableError("Container engine unreachable") from exc

        if state is None:
            await self.forget_stale(instance)
            raise InstanceNotFoundError()
        raise UpstreamUnavailableError(
            f"Instance is not accepting connections (container {state.status})"
        )

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self, tenant: Tenant, instance_name: str) -> None:
        """Tear down an instance owned by tenant.

        Exactly one concurrent caller performs the teardown; the others
        observe InstanceNotFoundError.

        Raises:
            InstanceNotFoundError: Unknown, foreign, or already stopped
            UpstreamUnavailableError: Engine failed; the row is kept
        """
        started = time.perf_counter()
        async with self._lock(instance_name):
            instance = await self.resolve(tenant, instance_name)

            try:
                await self._engine.remove(instance.container_id)
            except EngineError as exc:
                self._record("stop", "error", started)
                logger.error(
                    "Failed to remove container for %s",
                    instance_name,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "component": Component.LIFECYCLE,
                        "error_class": ErrorClass.TRANSIENT,
                        "instance": instance_name,
                        "container_id": instance.container_id[:12],
                        "error": str(exc),
                    },
                )
                raise UpstreamUnavailableError(
                    "Container engine failed to stop the instance"
                ) from exc

            if not await self._registry.delete(instance_name, tenant.api_key):
                raise InstanceNotFoundError()

        self._record("stop", "success", started)
        INSTANCES_LIVE.dec()
        logger.info(
            "Instance stopped: %s",
            instance_name,
            extra={
                "event": LogEvent.INSTANCE_STOPPED,
                "component": Component.LIFECYCLE,
                "instance": instance_name,
                "container_id": instance.container_id[:12],
                "tenant": tenant.user_name,
            },
        )

    # =========================================================================
    # Logs
    # =========================================================================

    async def open_logs(
        self, tenant: Tenant, instance_name: str, tail: int | None
    ) -> AsyncIterator[bytes]:
        """Open the log stream of an owned instance.

        Args:
            tail: Trailing line count, None for the full history

        Raises:
            InstanceNotFoundError: Unknown, foreign, or container gone
            UpstreamUnavailableError: Engine unreachable
        """
        instance = await self.resolve(tenant, instance_name)
        try:
            return await self._engine.logs(instance.container_id, tail)
        except EngineNotFoundError:
            await self.forget_stale(instance)
            raise InstanceNotFoundError() from None
        except EngineError as exc:
            raise UpstreamUnavailableError("Container engine unreachable") from exc

    @staticmethod
    def _record(operation: str, result: str, started: float) -> None:
        LIFECYCLE_OPERATIONS_TOTAL.labels(operation=operation, result=result).inc()
        LIFECYCLE_OPERATION_DURATION.labels(operation=operation).observe(
            time.perf_counter() - started
        )
