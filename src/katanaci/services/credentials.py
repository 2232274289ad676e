"""Credential store: API key to tenant resolution and tenant administration."""

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from katanaci.app.logging import key_prefix
from katanaci.core.errors import TenantAlreadyExistsError, TenantHasInstancesError
from katanaci.core.naming import new_api_key
from katanaci.infra.cache import get_tenant_cache, invalidate_tenant
from katanaci.infra.models import Instance, Tenant

logger = logging.getLogger(__name__)


class CredentialStore:
    """Resolves bearer tokens to tenants.

    Resolution is a single primary-key read fronted by a short-lived cache
    of positive hits.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, api_key: str) -> Tenant | None:
        """Return the tenant owning api_key, or None if unknown."""
        if not api_key:
            return None

        cache = get_tenant_cache()
        if (tenant := cache.get(api_key)) is not None:
            return tenant

        async with self._session_factory() as session:
            tenant = await session.get(Tenant, api_key)

        if tenant is not None:
            cache[api_key] = tenant
        return tenant

    async def add(self, user_name: str, api_key: str | None = None) -> Tenant:
        """Register a tenant.

        Args:
            user_name: Display name
            api_key: Key to register; generated when omitted

        Raises:
            TenantAlreadyExistsError: The key is already registered
        """
        api_key = api_key or new_api_key()
        stmt = (
            insert(Tenant)
            .values(api_key=api_key, user_name=user_name)
            .on_conflict_do_nothing(index_elements=["api_key"])
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            raise TenantAlreadyExistsError(user_name)

        logger.info(
            "Tenant registered: %s",
            user_name,
            extra={"tenant": user_name, "key_prefix": key_prefix(api_key)},
        )
        return Tenant(api_key=api_key, user_name=user_name)

    async def remove(self, api_key: str) -> bool:
        """Delete a tenant that owns no instances.

        Returns:
            True if a tenant was deleted

        Raises:
            TenantHasInstancesError: Tenant still owns live instances
        """
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, api_key)
            if tenant is None:
                return False

            count_stmt = (
                select(func.count())
                .select_from(Instance)
                .where(Instance.api_key == api_key)
            )
            count = (await session.execute(count_stmt)).scalar() or 0
            if count:
                raise TenantHasInstancesError(tenant.user_name, count)

            result = await session.execute(delete(Tenant).where(Tenant.api_key == api_key))
            await session.commit()

        invalidate_tenant(api_key)
        return result.rowcount > 0

    async def list_all(self) -> list[Tenant]:
        async with self._session_factory() as session:
            result = await session.execute(select(Tenant).order_by(Tenant.user_name))
            return list(result.scalars().all())
