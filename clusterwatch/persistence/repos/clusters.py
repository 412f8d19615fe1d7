from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.domain.models import Cluster, DatabaseConnection, Instance


async def get_cluster(session: AsyncSession, cluster_id: str) -> Cluster | None:
    return await session.get(Cluster, cluster_id)


async def list_instances(session: AsyncSession, cluster_id: str) -> list[Instance]:
    # Stable ordering keeps report sections deterministic between runs.
    result = await session.execute(
        select(Instance)
        .where(Instance.cluster_id == cluster_id)
        .order_by(Instance.is_writer.desc(), Instance.hostname, Instance.port, Instance.id)
    )
    return list(result.scalars().all())


async def get_database_with_instance(
    session: AsyncSession, database_id: str
) -> tuple[DatabaseConnection, Instance] | None:
    # Monitoring needs the instance for host, port and tunnel settings.
    result = await session.execute(
        select(DatabaseConnection, Instance)
        .join(Instance, Instance.id == DatabaseConnection.instance_id)
        .where(DatabaseConnection.id == database_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return row[0], row[1]
