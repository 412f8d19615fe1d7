from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from clusterwatch.core.errors import DatabaseNotFoundError, TargetExecutionError
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import clusters as clusters_repo
from clusterwatch.services.connections.provider import (
    TargetDescriptor,
    get_connection_provider,
    target_for_database,
)
from clusterwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Every non-idle backend on the instance except the one running this query.
_RUNNING_QUERIES_SQL = """
SELECT pid,
       usename AS username,
       datname AS database,
       state,
       query,
       EXTRACT(EPOCH FROM now() - query_start) AS duration_s,
       query_start AS started_at
FROM pg_stat_activity
WHERE state <> 'idle'
  AND pid <> pg_backend_pid()
ORDER BY query_start DESC NULLS LAST
"""


@dataclass(frozen=True)
class RunningQueryView:
    pid: int
    username: str | None
    database: str | None
    state: str | None
    query: str | None
    duration_s: float | None
    started_at: str | None


def _running_query_view(row: dict[str, Any]) -> RunningQueryView:
    duration = row.get("duration_s")
    return RunningQueryView(
        pid=int(row["pid"]),
        username=row.get("username"),
        database=row.get("database"),
        state=row.get("state"),
        query=row.get("query"),
        duration_s=float(duration) if duration is not None else None,
        started_at=row.get("started_at"),
    )


async def _target(database_id: str) -> TargetDescriptor:
    async with SessionLocal() as session:
        found = await clusters_repo.get_database_with_instance(session, database_id)
    if found is None:
        raise DatabaseNotFoundError(f"database {database_id} not found")
    database, instance = found
    return target_for_database(database, instance)


async def list_running_queries(database_id: str) -> list[RunningQueryView]:
    target = await _target(database_id)
    provider = get_connection_provider()
    async with provider.connect(target) as handle:
        try:
            rows = await provider.fetch_rows(handle, _RUNNING_QUERIES_SQL)
        except Exception as exc:
            raise TargetExecutionError(target.label, str(exc)) from exc
    return [_running_query_view(row) for row in rows]


async def terminate_backend(database_id: str, pid: int, *, requested_by: str, query_text: str | None = None) -> bool:
    """Ask the target to terminate one backend; returns what ``pg_terminate_backend`` reports.

    The pid is inlined as an integer literal because target SQL runs without
    bind parameters.
    """
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        raise ValueError("pid must be a positive integer")
    target = await _target(database_id)
    provider = get_connection_provider()
    async with provider.connect(target) as handle:
        try:
            rows = await provider.fetch_rows(handle, f"SELECT pg_terminate_backend({pid}) AS terminated")
        except Exception as exc:
            raise TargetExecutionError(target.label, str(exc)) from exc
    terminated = bool(rows and rows[0].get("terminated"))
    increment_counter("backend_terminations_total" if terminated else "backend_terminations_refused_total")
    # Operators audit terminations from the log, so keep the statement text alongside the pid.
    logger.warning(
        "backend_terminate_requested database_id=%s target=%s pid=%s terminated=%s requested_by=%s query=%r",
        database_id,
        target.label,
        pid,
        terminated,
        requested_by,
        query_text,
    )
    return terminated
