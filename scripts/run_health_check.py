from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from clusterwatch.core.logging import configure_logging
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import health_checks as health_checks_repo
from clusterwatch.services.health import ensure_default_health_checks, execute_health_check, get_execution


async def _run(cluster_id: str, requested_by: str) -> int:
    # Run in the foreground so the report is ready when the command exits.
    configure_logging()
    async with SessionLocal() as session:
        await ensure_default_health_checks(session)
        execution = await health_checks_repo.create_execution(
            session,
            cluster_id=cluster_id,
            requested_by=requested_by,
            started_at=datetime.now(timezone.utc),
        )
        await session.commit()
    await execute_health_check(execution.id)
    view = await get_execution(execution.id)
    print(view.markdown or "")
    print(f"execution_id={view.id} status={view.status} results={len(view.results)}", file=sys.stderr)
    return 0 if view.status == "completed" else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the health check catalog against a cluster")
    parser.add_argument("cluster_id")
    parser.add_argument("--requested-by", default="cli")
    args = parser.parse_args()
    return asyncio.run(_run(args.cluster_id, args.requested_by))


if __name__ == "__main__":
    raise SystemExit(main())
