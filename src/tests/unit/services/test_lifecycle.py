"""Tests for LifecycleManager against the in-memory engine."""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from katanaci.core.errors import (
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    ResourceExhaustedError,
    UpstreamUnavailableError,
)
from katanaci.core.interfaces import EngineError
from katanaci.core.naming import is_instance_name
from katanaci.services.lifecycle import StartOptions


async def _collect(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


class TestStartOptions:
    def test_default_command(self) -> None:
        assert StartOptions().command(12345) == [
            "katana", "--port", "12345", "--disable-fee",
        ]

    def test_full_command(self) -> None:
        cmd = StartOptions(block_time=500, no_mining=True).command(12345)
        assert cmd[-3:] == ["--block-time", "500", "--no-mining"]

    def test_no_mining_false_is_omitted(self) -> None:
        assert "--no-mining" not in StartOptions(no_mining=False).command(1)


class TestStart:
    async def test_creates_runs_and_registers(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)

        assert is_instance_name(instance.instance_name)
        row = await services.registry.get(instance.instance_name)
        assert row is not None
        assert row.container_id == instance.container_id
        assert row.api_key == alice.api_key

        container = engine.containers[instance.container_id]
        assert container.state.running
        assert container.spec.name == f"katana-ci-{instance.instance_name}"
        assert container.spec.port == instance.proxied_port
        assert container.spec.cmd[:3] == ["katana", "--port", str(instance.proxied_port)]
        assert container.spec.labels == {
            "katana-ci.instance": instance.instance_name,
            "katana-ci.owner": "alice",
        }
        assert services.ports.reserved == frozenset()

    async def test_concurrent_starts_get_distinct_ports(self, services, alice) -> None:
        instances = await asyncio.gather(*(services.lifecycle.start(alice) for _ in range(20)))
        ports = [i.proxied_port for i in instances]
        assert len(set(ports)) == 20
        assert await services.registry.ports_in_use() == set(ports)

    async def test_create_failure(self, services, engine, alice) -> None:
        engine.fail_create = EngineError("daemon down")
        with pytest.raises(UpstreamUnavailableError):
            await services.lifecycle.start(alice)
        assert engine.containers == {}
        assert await services.registry.list_all() == []

    async def test_start_failure_rolls_back(self, services, engine, alice) -> None:
        """A created container that fails to start is removed, and no row exists."""
        engine.fail_start = EngineError("port already allocated")
        with pytest.raises(UpstreamUnavailableError):
            await services.lifecycle.start(alice)
        assert engine.containers == {}
        assert len(engine.removed) == 1
        assert await services.registry.list_all() == []
        assert services.ports.reserved == frozenset()

    async def test_registry_failure_rolls_back(self, services, engine, alice) -> None:
        with patch.object(
            services.registry,
            "add",
            AsyncMock(side_effect=InstanceAlreadyExistsError("x")),
        ):
            with pytest.raises(ResourceExhaustedError):
                await services.lifecycle.start(alice)
        assert engine.running == []
        assert len(engine.removed) == 1

    async def test_unexpected_registry_error_propagates(self, services, engine, alice) -> None:
        with patch.object(
            services.registry, "add", AsyncMock(side_effect=RuntimeError("disk full"))
        ):
            with pytest.raises(RuntimeError, match="disk full"):
                await services.lifecycle.start(alice)
        assert engine.containers == {}

    async def test_rollback_failure_keeps_original_error(
        self, services, engine, alice, caplog
    ) -> None:
        engine.fail_start = EngineError("start failed")
        engine.fail_remove = EngineError("remove failed")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(UpstreamUnavailableError) as exc_info:
                await services.lifecycle.start(alice)

        assert "start" in str(exc_info.value.__cause__)
        assert any(
            getattr(r, "event", None) == "rollback_failed" for r in caplog.records
        )
        assert await services.registry.list_all() == []


class TestStop:
    async def test_stop_tears_down(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        await services.lifecycle.stop(alice, instance.instance_name)

        assert instance.container_id not in engine.containers
        assert await services.registry.get(instance.instance_name) is None

    async def test_second_stop_is_not_found(self, services, alice) -> None:
        instance = await services.lifecycle.start(alice)
        await services.lifecycle.stop(alice, instance.instance_name)
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.stop(alice, instance.instance_name)

    async def test_concurrent_stops_single_winner(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)

        results = await asyncio.gather(
            *(services.lifecycle.stop(alice, instance.instance_name) for _ in range(5)),
            return_exceptions=True,
        )

        assert results.count(None) == 1
        assert all(isinstance(r, InstanceNotFoundError) for r in results if r is not None)
        assert engine.removed == [instance.container_id]
        assert await services.registry.get(instance.instance_name) is None

    async def test_foreign_tenant_is_not_found(self, services, engine, alice, bob) -> None:
        instance = await services.lifecycle.start(alice)
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.stop(bob, instance.instance_name)
        assert engine.containers[instance.container_id].state.running
        assert await services.registry.exists(instance.instance_name)

    async def test_container_already_gone(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        engine.containers.clear()
        await services.lifecycle.stop(alice, instance.instance_name)
        assert await services.registry.get(instance.instance_name) is None

    async def test_engine_failure_keeps_row(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        engine.fail_remove = EngineError("daemon down")
        with pytest.raises(UpstreamUnavailableError):
            await services.lifecycle.stop(alice, instance.instance_name)
        assert await services.registry.exists(instance.instance_name)

    async def test_unknown_name(self, services, alice) -> None:
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.stop(alice, "000000000000")


class TestLogs:
    async def test_tail(self, services, alice) -> None:
        instance = await services.lifecycle.start(alice)
        body = await _collect(await services.lifecycle.open_logs(alice, instance.instance_name, 10))
        lines = body.decode().splitlines()
        assert lines == [f"line {i}" for i in range(90, 100)]

    async def test_full_history(self, services, alice) -> None:
        instance = await services.lifecycle.start(alice)
        body = await _collect(
            await services.lifecycle.open_logs(alice, instance.instance_name, None)
        )
        assert len(body.decode().splitlines()) == 100

    async def test_stale_row_is_forgotten(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        engine.containers.clear()
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.open_logs(alice, instance.instance_name, 25)
        assert await services.registry.get(instance.instance_name) is None

    async def test_foreign_tenant(self, services, alice, bob) -> None:
        instance = await services.lifecycle.start(alice)
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.open_logs(bob, instance.instance_name, 25)


class TestDiagnoseUnreachable:
    async def test_container_gone(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        engine.containers.clear()
        with pytest.raises(InstanceNotFoundError):
            await services.lifecycle.diagnose_unreachable(instance)
        assert await services.registry.get(instance.instance_name) is None

    async def test_container_present(self, services, alice) -> None:
        instance = await services.lifecycle.start(alice)
        with pytest.raises(UpstreamUnavailableError):
            await services.lifecycle.diagnose_unreachable(instance)
        assert await services.registry.exists(instance.instance_name)

    async def test_engine_unreachable_keeps_row(self, services, engine, alice) -> None:
        instance = await services.lifecycle.start(alice)
        engine.fail_inspect = EngineError("daemon down")
        with pytest.raises(UpstreamUnavailableError):
            await services.lifecycle.diagnose_unreachable(instance)
        assert await services.registry.exists(instance.instance_name)
