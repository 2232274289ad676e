"""Host port allocation for new instances.

A port is "in use" when a Registry row holds it. Between drawing a port and
inserting the row, the port is held in an in-flight reservation so that
concurrent starts in this process never draw the same one; the UNIQUE
constraint on proxied_port covers other processes.
"""

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from katanaci.core.errors import ResourceExhaustedError
from katanaci.core.logging_schema import ErrorClass
from katanaci.services.registry import InstanceRegistry

logger = logging.getLogger(__name__)


class PortAllocator:
    def __init__(
        self,
        registry: InstanceRegistry,
        range_start: int,
        range_end: int,
        max_attempts: int = 64,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._range = range(range_start, range_end)
        self._max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()
        self._lock = asyncio.Lock()
        self._reserved: set[int] = set()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    async def allocate(self) -> int:
        """Draw a free port and reserve it.

        Raises:
            ResourceExhaustedError: No free port found within max_attempts
        """
        async with self._lock:
            in_use = await self._registry.ports_in_use() | self._reserved
            for _ in range(self._max_attempts):
                port = self._rng.choice(self._range)
                if port not in in_use:
                    self._reserved.add(port)
                    return port

        logger.warning(
            "Port range exhausted after %d attempts",
            self._max_attempts,
            extra={
                "error_class": ErrorClass.RESOURCE,
                "in_use": len(in_use),
                "range_size": len(self._range),
            },
        )
        raise ResourceExhaustedError("No free port available for a new instance")

    def release(self, port: int) -> None:
        self._reserved.discard(port)

    @asynccontextmanager
    async def reserve(self) -> AsyncIterator[int]:
        """Allocate a port held until the block exits.

        The Registry row must be written inside the block.
        """
        port = await self.allocate()
        try:
            yield port
        finally:
            self.release(port)
