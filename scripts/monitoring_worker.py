from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import logging

from clusterwatch.core.errors import MonitoringConflictError
from clusterwatch.core.logging import configure_logging
from clusterwatch.services.monitoring import (
    resume_active_sessions,
    start_monitoring,
    stop_all_tasks,
)


logger = logging.getLogger(__name__)


async def _main(database_ids: list[str], interval_s: int | None, until: datetime | None) -> None:
    # Boot a dedicated sampling process so monitoring continues without request traffic.
    configure_logging()
    resumed = await resume_active_sessions()
    for database_id in database_ids:
        try:
            status = await start_monitoring(
                database_id,
                requested_by="cli",
                interval_seconds=interval_s,
                scheduled_end_time=until,
            )
        except MonitoringConflictError:
            # Already resumed from its active record above.
            logger.info("monitoring_worker_skip_live database_id=%s", database_id)
            continue
        print(f"session_id={status.session_id} database_id={database_id}")
    logger.info("monitoring_worker_ready resumed=%s started=%s", len(resumed), len(database_ids))
    try:
        await asyncio.Event().wait()
    finally:
        await stop_all_tasks()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run monitoring loops for active sessions")
    parser.add_argument("--database-id", action="append", default=[], help="start monitoring this database")
    parser.add_argument("--interval", type=int, default=None)
    parser.add_argument("--until", type=datetime.fromisoformat, default=None, help="ISO-8601 end time with offset")
    args = parser.parse_args()
    try:
        asyncio.run(_main(args.database_id, args.interval, args.until))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
