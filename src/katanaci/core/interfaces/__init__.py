"""Capability interfaces implemented by adapters."""

from katanaci.core.interfaces.engine import (
    ContainerEngine,
    ContainerSpec,
    ContainerState,
    EngineError,
    EngineNotFoundError,
)

__all__ = [
    "ContainerEngine",
    "ContainerSpec",
    "ContainerState",
    "EngineError",
    "EngineNotFoundError",
]
