from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from clusterwatch.core.errors import ExtensionUnavailableError
from clusterwatch.persistence.repos import statements as statements_repo
from clusterwatch.persistence.repos.statements import SampleStats
from clusterwatch.services import normalizer
from clusterwatch.services.connections.provider import ConnectionProvider
from clusterwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EXTENSION_CHECK_SQL = "SELECT 1 AS installed FROM pg_extension WHERE extname = 'pg_stat_statements'"

# Heaviest statements first; the sampler's own statements are excluded so they never show up as findings.
_STATS_SQL = """
SELECT query,
       calls,
       total_exec_time AS total_time,
       min_exec_time AS min_time,
       max_exec_time AS max_time,
       mean_exec_time AS mean_time
FROM pg_stat_statements
WHERE dbid = (SELECT oid FROM pg_database WHERE datname = current_database())
  AND strpos(lower(query), 'pg_stat_statements') = 0
  AND strpos(lower(query), 'pg_extension') = 0
ORDER BY total_exec_time DESC
LIMIT {limit}
"""


@dataclass(frozen=True)
class StatementStat:
    query: str
    calls: int
    total_time: float
    min_time: float | None
    max_time: float | None
    mean_time: float | None


@dataclass
class CycleTally:
    statements_seen: int = 0
    canonical_created: int = 0
    canonical_updated: int = 0
    samples_created: int = 0
    samples_updated: int = 0
    skipped: int = 0


def _float_or_none(value: Any) -> float | None:
    return float(value) if value is not None else None


def _to_stat(row: dict[str, Any]) -> StatementStat | None:
    query = row.get("query")
    if not isinstance(query, str) or not query.strip():
        return None
    return StatementStat(
        query=query,
        calls=int(row.get("calls") or 0),
        total_time=float(row.get("total_time") or 0.0),
        min_time=_float_or_none(row.get("min_time")),
        max_time=_float_or_none(row.get("max_time")),
        mean_time=_float_or_none(row.get("mean_time")),
    )


def _merge(a: StatementStat, b: StatementStat) -> StatementStat:
    calls = a.calls + b.calls
    total_time = a.total_time + b.total_time
    mins = [value for value in (a.min_time, b.min_time) if value is not None]
    maxes = [value for value in (a.max_time, b.max_time) if value is not None]
    return StatementStat(
        query=a.query,
        calls=calls,
        total_time=total_time,
        min_time=min(mins) if mins else None,
        max_time=max(maxes) if maxes else None,
        mean_time=(total_time / calls) if calls else None,
    )


def merge_duplicate_texts(stats: list[StatementStat]) -> list[StatementStat]:
    # pg_stat_statements keys on (user, database, queryid); one raw text can appear once per role.
    merged: dict[str, StatementStat] = {}
    for stat in stats:
        existing = merged.get(stat.query)
        merged[stat.query] = stat if existing is None else _merge(existing, stat)
    return list(merged.values())


async def collect_statement_stats(
    provider: ConnectionProvider,
    handle: AsyncConnection,
    *,
    limit: int,
) -> list[StatementStat]:
    installed = await provider.fetch_rows(handle, EXTENSION_CHECK_SQL)
    if not installed:
        raise ExtensionUnavailableError("pg_stat_statements extension is not installed")
    try:
        rows = await provider.fetch_rows(handle, _STATS_SQL.format(limit=max(1, int(limit))))
    except DBAPIError as exc:
        # Installed but not preloaded raises on read; treat it the same as missing.
        if "pg_stat_statements" in str(exc):
            raise ExtensionUnavailableError(str(exc.orig or exc)) from exc
        raise
    stats = [_to_stat(row) for row in rows]
    return merge_duplicate_texts([stat for stat in stats if stat is not None])


async def record_statement_stats(
    session: AsyncSession,
    *,
    database_id: str,
    stats: list[StatementStat],
    observed_at: datetime,
) -> CycleTally:
    tally = CycleTally()
    for stat in stats:
        canonical_text, signature = normalizer.normalize_and_hash(stat.query)
        if not canonical_text:
            tally.skipped += 1
            continue
        tally.statements_seen += 1
        canonical, canonical_created = await statements_repo.upsert_canonical_statement(
            session,
            database_id=database_id,
            canonical_text=canonical_text,
            signature=signature,
            observed_at=observed_at,
        )
        if canonical_created:
            tally.canonical_created += 1
        else:
            tally.canonical_updated += 1
        _, sample_created = await statements_repo.upsert_sample(
            session,
            canonical_id=canonical.id,
            database_id=database_id,
            raw_text=stat.query,
            raw_hash=normalizer.raw_hash(stat.query),
            stats=SampleStats(
                calls=stat.calls,
                total_time=stat.total_time,
                min_time=stat.min_time,
                max_time=stat.max_time,
                mean_time=stat.mean_time,
            ),
            observed_at=observed_at,
        )
        if sample_created:
            tally.samples_created += 1
        else:
            tally.samples_updated += 1

    increment_counter("monitoring_statements_new_total", tally.canonical_created)
    increment_counter("monitoring_statements_updated_total", tally.canonical_updated)
    increment_counter("monitoring_samples_new_total", tally.samples_created)
    increment_counter("monitoring_samples_updated_total", tally.samples_updated)
    logger.info(
        "monitoring_cycle_recorded database_id=%s seen=%s new=%s updated=%s samples_new=%s samples_updated=%s",
        database_id,
        tally.statements_seen,
        tally.canonical_created,
        tally.canonical_updated,
        tally.samples_created,
        tally.samples_updated,
    )
    return tally
