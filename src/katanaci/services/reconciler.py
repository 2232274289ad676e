"""Periodic Registry/engine reconciliation.

Heals both divergence directions in one sweep:
- stale rows (container gone) are deleted
- orphan containers (labeled, no row, older than the grace period) are removed

The engine is observed before the Registry is read. A row created after the
observation is never judged against it, and a container created by an
in-flight start is protected by the grace period until its row exists.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from katanaci.app.metrics.collector import INSTANCES_LIVE, RECONCILE_REMOVED_TOTAL
from katanaci.core.interfaces import ContainerEngine, EngineError
from katanaci.core.logging_schema import Component, LogEvent
from katanaci.services.lifecycle import LifecycleManager
from katanaci.services.registry import InstanceRegistry

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    stale_rows: int = 0
    orphans_removed: int = 0
    orphans_failed: int = 0


class Reconciler:
    def __init__(
        self,
        registry: InstanceRegistry,
        lifecycle: LifecycleManager,
        engine: ContainerEngine,
        *,
        label: str,
        interval: float = 60.0,
        grace_seconds: float = 60.0,
    ) -> None:
        self._registry = registry
        self._lifecycle = lifecycle
        self._engine = engine
        self._label = label
        self._interval = interval
        self._grace = timedelta(seconds=grace_seconds)

    async def run(self) -> None:
        """Reconcile every interval until cancelled."""
        logger.info(
            "Reconciler started (interval=%.0fs)",
            self._interval,
            extra={"component": Component.RECONCILER},
        )
        while True:
            try:
                await self.tick()
            except EngineError as e:
                logger.warning(
                    "Reconcile skipped, engine unavailable: %s",
                    e,
                    extra={"component": Component.RECONCILER},
                )
            except Exception:
                logger.exception(
                    "Reconcile cycle failed", extra={"component": Component.RECONCILER}
                )
            await asyncio.sleep(self._interval)

    async def tick(self) -> ReconcileResult:
        """Run one reconciliation cycle."""
        started = time.perf_counter()
        result = ReconcileResult()

        # Step 1: observe the engine first
        observed_at = datetime.now(UTC)
        containers = await self._engine.list_managed(self._label)
        container_ids = {c.container_id for c in containers}

        # Step 2: then read the registry
        instances = await self._registry.list_all()
        tracked_ids = {i.container_id for i in instances}

        for instance in instances:
            if instance.container_id in container_ids:
                continue
            if _as_utc(instance.created_at) >= observed_at:
                continue
            await self._lifecycle.forget_stale(instance)
            RECONCILE_REMOVED_TOTAL.labels(kind="row").inc()
            result.stale_rows += 1

        for container in containers:
            if container.container_id in tracked_ids:
                continue
            created_at = container.created_at
            if created_at is None or observed_at - created_at < self._grace:
                continue
            try:
                await self._engine.remove(container.container_id)
            except EngineError as e:
                result.orphans_failed += 1
                logger.warning(
                    "Failed to remove orphan container %s: %s",
                    container.container_id[:12],
                    e,
                    extra={"component": Component.RECONCILER},
                )
                continue
            RECONCILE_REMOVED_TOTAL.labels(kind="container").inc()
            result.orphans_removed += 1
            logger.warning(
                "Removed orphan container %s",
                container.container_id[:12],
                extra={
                    "event": LogEvent.ORPHAN_REMOVED,
                    "component": Component.RECONCILER,
                    "container_id": container.container_id[:12],
                    "instance": container.labels.get(self._label),
                },
            )

        INSTANCES_LIVE.set(len(instances) - result.stale_rows)
        logger.info(
            "Reconcile complete: %d stale rows, %d orphans removed",
            result.stale_rows,
            result.orphans_removed,
            extra={
                "event": LogEvent.RECONCILE_COMPLETE,
                "component": Component.RECONCILER,
                "containers": len(containers),
                "instances": len(instances),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read
    return value if value.tzinfo else value.replace(tzinfo=UTC)
