from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.domain.models import CanonicalStatement, StatementGroup


async def create_group(
    session: AsyncSession,
    *,
    database_id: str,
    name: str,
    description: str | None = None,
) -> StatementGroup:
    group = StatementGroup(id=uuid4().hex, database_id=database_id, name=name, description=description)
    session.add(group)
    await session.flush()
    return group


async def list_groups(session: AsyncSession, database_id: str) -> list[StatementGroup]:
    result = await session.execute(
        select(StatementGroup)
        .where(StatementGroup.database_id == database_id)
        .order_by(StatementGroup.name, StatementGroup.id)
    )
    return list(result.scalars().all())


async def delete_group(session: AsyncSession, group_id: str) -> bool:
    group = await session.get(StatementGroup, group_id)
    if group is None:
        return False
    # Null references explicitly; backends without enforced FKs would otherwise leave dangling ids.
    await session.execute(
        update(CanonicalStatement)
        .where(CanonicalStatement.group_id == group_id)
        .values(group_id=None)
        .execution_options(synchronize_session="fetch")
    )
    await session.delete(group)
    await session.flush()
    return True
