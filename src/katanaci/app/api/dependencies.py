"""Shared FastAPI dependencies.

Service objects live on ``app.state.services`` for the lifetime of the
application; tests install their own (e.g. with an in-memory engine).
"""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import HTTPConnection

from katanaci.app.config import Settings
from katanaci.core.errors import UnauthorizedError
from katanaci.core.interfaces import ContainerEngine
from katanaci.core.logging_schema import Component, LogEvent
from katanaci.infra.models import Tenant
from katanaci.services.credentials import CredentialStore
from katanaci.services.lifecycle import LifecycleManager
from katanaci.services.ports import PortAllocator
from katanaci.services.registry import InstanceRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    credentials: CredentialStore
    registry: InstanceRegistry
    ports: PortAllocator
    lifecycle: LifecycleManager
    engine: ContainerEngine


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    engine: ContainerEngine,
) -> Services:
    """Wire the service graph around one session factory and one engine."""
    if not settings.docker.image:
        raise ValueError("Sequencer image not configured (set KATANA_CI_IMAGE)")

    registry = InstanceRegistry(session_factory)
    ports = PortAllocator(
        registry,
        range_start=settings.ports.range_start,
        range_end=settings.ports.range_end,
        max_attempts=settings.ports.max_attempts,
    )
    lifecycle = LifecycleManager(
        registry,
        ports,
        engine,
        image=settings.docker.image,
        container_prefix=settings.docker.container_prefix,
        label=settings.docker.label,
        owner_label=settings.docker.owner_label,
        name_max_attempts=settings.instances.name_max_attempts,
    )
    return Services(
        credentials=CredentialStore(session_factory),
        registry=registry,
        ports=ports,
        lifecycle=lifecycle,
        engine=engine,
    )


def get_services(conn: HTTPConnection) -> Services:
    return conn.app.state.services


def parse_bearer(authorization: str | None) -> str | None:
    """Extract the token of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def authenticate(services: Services, authorization: str | None) -> Tenant:
    """Resolve the caller's tenant.

    Raises:
        UnauthorizedError: Missing, malformed or unknown token
    """
    token = parse_bearer(authorization)
    if token is None:
        raise UnauthorizedError("Missing bearer token")

    tenant = await services.credentials.resolve(token)
    if tenant is None:
        logger.info(
            "Rejected unknown API key",
            extra={"event": LogEvent.AUTH_FAILED, "component": Component.API},
        )
        raise UnauthorizedError("Invalid API key")
    return tenant


async def get_current_tenant(
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> Tenant:
    return await authenticate(services, authorization)


def get_lifecycle_manager(
    services: Annotated[Services, Depends(get_services)],
) -> LifecycleManager:
    return services.lifecycle


CurrentTenant = Annotated[Tenant, Depends(get_current_tenant)]
Lifecycle = Annotated[LifecycleManager, Depends(get_lifecycle_manager)]
AppServices = Annotated[Services, Depends(get_services)]
