"""Instance registry: the authoritative name -> container/owner/port mapping.

All mutation is single-statement and conditional so that concurrent
workers agree on one outcome:

- add() is insert-if-absent on both the name and the port
- delete() only removes a row still owned by the caller
- forget() only removes the row if it still points at the same container
"""

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from katanaci.core.errors import InstanceAlreadyExistsError
from katanaci.infra.models import Instance


class InstanceRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, instance_name: str) -> Instance | None:
        async with self._session_factory() as session:
            return await session.get(Instance, instance_name)

    async def exists(self, instance_name: str) -> bool:
        return await self.get(instance_name) is not None

    async def add(self, instance: Instance) -> None:
        """Insert a new row.

        Raises:
            InstanceAlreadyExistsError: Name or port is already taken
        """
        stmt = (
            insert(Instance)
            .values(
                instance_name=instance.instance_name,
                container_id=instance.container_id,
                api_key=instance.api_key,
                proxied_port=instance.proxied_port,
                created_at=instance.created_at,
            )
            .on_conflict_do_nothing()
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            raise InstanceAlreadyExistsError(instance.instance_name)

    async def delete(self, instance_name: str, api_key: str) -> bool:
        """Delete the row if it exists and is owned by api_key.

        Returns:
            True if this call removed the row
        """
        stmt = delete(Instance).where(
            Instance.instance_name == instance_name,
            Instance.api_key == api_key,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    async def forget(self, instance_name: str, container_id: str) -> bool:
        """Delete a stale row, unless it has been replaced meanwhile."""
        stmt = delete(Instance).where(
            Instance.instance_name == instance_name,
            Instance.container_id == container_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    async def ports_in_use(self) -> set[int]:
        async with self._session_factory() as session:
            result = await session.execute(select(Instance.proxied_port))
            return set(result.scalars().all())

    async def list_all(self) -> list[Instance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance).order_by(Instance.created_at)
            )
            return list(result.scalars().all())

    async def list_for_tenant(self, api_key: str) -> list[Instance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance)
                .where(Instance.api_key == api_key)
                .order_by(Instance.created_at)
            )
            return list(result.scalars().all())
