from __future__ import annotations

import argparse
import asyncio
import sys

from clusterwatch.domain.models import Base, Cluster, DatabaseConnection, Instance
from clusterwatch.persistence.db import SessionLocal, engine
from clusterwatch.services.health.catalog import ensure_default_health_checks


DEMO_CLUSTER_ID = "demo-cluster"
DEMO_INSTANCE_ID = "demo-writer"
DEMO_DATABASE_ID = "demo-db"


async def seed_demo(*, host: str, port: int, username: str, password: str, database: str) -> int:
    # Tables are created from the models; migrations are managed outside this project.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with SessionLocal() as session:
        seeded = await ensure_default_health_checks(session)
        print(f"Seeded {seeded} health check definitions.")

        cluster = await session.get(Cluster, DEMO_CLUSTER_ID)
        if cluster is None:
            session.add(
                Cluster(
                    id=DEMO_CLUSTER_ID,
                    name="Demo cluster",
                    description="Local PostgreSQL used for trying out monitoring and health checks.",
                    ignored_databases=[],
                    extra_databases=[],
                )
            )
        instance = await session.get(Instance, DEMO_INSTANCE_ID)
        if instance is None:
            session.add(
                Instance(
                    id=DEMO_INSTANCE_ID,
                    cluster_id=DEMO_CLUSTER_ID,
                    hostname=host,
                    port=port,
                    username=username,
                    password=password,
                    is_writer=True,
                    default_database_name=database,
                )
            )
        else:
            # Keep the demo instance aligned with the flags passed on this run.
            instance.hostname = host
            instance.port = port
            instance.username = username
            instance.password = password
            instance.default_database_name = database
        if await session.get(DatabaseConnection, DEMO_DATABASE_ID) is None:
            session.add(
                DatabaseConnection(
                    id=DEMO_DATABASE_ID,
                    instance_id=DEMO_INSTANCE_ID,
                    name=database,
                    database_name=database,
                )
            )
        await session.commit()
    print(f"cluster_id={DEMO_CLUSTER_ID}")
    print(f"database_id={DEMO_DATABASE_ID}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Create tables and seed a demo cluster")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=5432)
    parser.add_argument("--username", default="postgres")
    parser.add_argument("--password", default="postgres")
    parser.add_argument("--database", default="postgres")
    args = parser.parse_args()
    # Surface clear failures and exit non-zero so dev scripts can detect issues.
    try:
        return asyncio.run(
            seed_demo(
                host=args.host,
                port=args.port,
                username=args.username,
                password=args.password,
                database=args.database,
            )
        )
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
