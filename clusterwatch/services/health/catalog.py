from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.domain.models import HealthCheckDefinition
from clusterwatch.persistence.repos import health_checks as health_checks_repo


logger = logging.getLogger(__name__)

INSTANCE_SCOPES = ("writer", "all_instances")
DATABASE_SCOPES = ("single", "all_user_databases")
WARN_WHEN = ("never", "rows")


@dataclass(frozen=True)
class HealthCheckSpec:
    key: str
    title: str
    query: str
    instance_scope: str = "all_instances"
    database_scope: str = "single"
    # "rows" flags a result as a warning whenever the query returns anything.
    warn_when: str = "never"
    display_order: int = 0


DEFAULT_HEALTH_CHECKS: tuple[HealthCheckSpec, ...] = (
    HealthCheckSpec(
        key="replication_status",
        title="Replication status",
        query="""
SELECT application_name,
       client_addr::text AS client_addr,
       state,
       sync_state,
       pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn) AS replay_lag_bytes,
       replay_lag::text AS replay_lag
FROM pg_stat_replication
ORDER BY application_name
""",
        instance_scope="writer",
        display_order=10,
    ),
    HealthCheckSpec(
        key="long_running_transactions",
        title="Long-running transactions",
        query="""
SELECT pid,
       usename,
       datname,
       state,
       (now() - xact_start)::text AS transaction_age,
       left(query, 200) AS query
FROM pg_stat_activity
WHERE xact_start IS NOT NULL
  AND now() - xact_start > interval '5 minutes'
  AND pid <> pg_backend_pid()
ORDER BY xact_start
LIMIT 50
""",
        warn_when="rows",
        display_order=20,
    ),
    HealthCheckSpec(
        key="blocked_locks",
        title="Blocked sessions",
        query="""
SELECT blocked.pid AS blocked_pid,
       blocked.usename AS blocked_user,
       blocking.pid AS blocking_pid,
       blocking.usename AS blocking_user,
       (now() - blocked.query_start)::text AS waiting_for,
       left(blocked.query, 200) AS blocked_query,
       left(blocking.query, 200) AS blocking_query
FROM pg_stat_activity AS blocked
JOIN LATERAL unnest(pg_blocking_pids(blocked.pid)) AS blocker(pid) ON true
JOIN pg_stat_activity AS blocking ON blocking.pid = blocker.pid
ORDER BY blocked.query_start
LIMIT 50
""",
        warn_when="rows",
        display_order=30,
    ),
    HealthCheckSpec(
        key="xid_wraparound",
        title="Transaction ID wraparound risk",
        query="""
SELECT datname,
       age(datfrozenxid) AS xid_age,
       round(100.0 * age(datfrozenxid) / 2147483648, 2) AS pct_towards_wraparound
FROM pg_database
WHERE datallowconn
  AND age(datfrozenxid) > 1000000000
ORDER BY age(datfrozenxid) DESC
""",
        warn_when="rows",
        display_order=40,
    ),
    HealthCheckSpec(
        key="connection_saturation",
        title="Connection saturation",
        query="""
SELECT count(*) AS connections,
       current_setting('max_connections')::int AS max_connections,
       round(100.0 * count(*) / current_setting('max_connections')::int, 2) AS pct_used,
       count(*) FILTER (WHERE state = 'active') AS active,
       count(*) FILTER (WHERE state = 'idle in transaction') AS idle_in_transaction
FROM pg_stat_activity
""",
        display_order=50,
    ),
    HealthCheckSpec(
        key="tables_needing_vacuum",
        title="Tables needing vacuum",
        query="""
SELECT schemaname,
       relname,
       n_live_tup,
       n_dead_tup,
       round(100.0 * n_dead_tup / greatest(n_live_tup + n_dead_tup, 1), 2) AS dead_pct,
       last_autovacuum::text AS last_autovacuum
FROM pg_stat_user_tables
WHERE n_dead_tup > 10000
  AND n_dead_tup > 0.2 * greatest(n_live_tup, 1)
ORDER BY n_dead_tup DESC
LIMIT 20
""",
        instance_scope="writer",
        database_scope="all_user_databases",
        warn_when="rows",
        display_order=60,
    ),
    HealthCheckSpec(
        key="unused_indexes",
        title="Unused indexes",
        query="""
SELECT s.schemaname,
       s.relname AS table_name,
       s.indexrelname AS index_name,
       pg_size_pretty(pg_relation_size(s.indexrelid)) AS index_size
FROM pg_stat_user_indexes AS s
JOIN pg_index AS i ON i.indexrelid = s.indexrelid
WHERE s.idx_scan = 0
  AND NOT i.indisunique
  AND NOT i.indisprimary
ORDER BY pg_relation_size(s.indexrelid) DESC
LIMIT 20
""",
        instance_scope="writer",
        database_scope="all_user_databases",
        warn_when="rows",
        display_order=70,
    ),
    HealthCheckSpec(
        key="invalid_indexes",
        title="Invalid indexes",
        query="""
SELECT n.nspname AS schemaname,
       c.relname AS index_name,
       t.relname AS table_name
FROM pg_index AS i
JOIN pg_class AS c ON c.oid = i.indexrelid
JOIN pg_class AS t ON t.oid = i.indrelid
JOIN pg_namespace AS n ON n.oid = c.relnamespace
WHERE NOT i.indisvalid
ORDER BY n.nspname, c.relname
""",
        instance_scope="writer",
        database_scope="all_user_databases",
        warn_when="rows",
        display_order=80,
    ),
    HealthCheckSpec(
        key="database_sizes",
        title="Database sizes",
        query="""
SELECT datname,
       pg_size_pretty(pg_database_size(datname)) AS size,
       pg_database_size(datname) AS size_bytes
FROM pg_database
WHERE NOT datistemplate
ORDER BY pg_database_size(datname) DESC
""",
        instance_scope="writer",
        display_order=90,
    ),
)


def _definition_from_spec(spec: HealthCheckSpec) -> HealthCheckDefinition:
    return HealthCheckDefinition(
        id=uuid4().hex,
        key=spec.key,
        title=spec.title,
        query=spec.query.strip(),
        instance_scope=spec.instance_scope,
        database_scope=spec.database_scope,
        warn_when=spec.warn_when,
        display_order=spec.display_order,
        active=True,
    )


async def ensure_default_health_checks(session: AsyncSession) -> int:
    # Seed built-in checks by key; operator edits and additions are never overwritten.
    existing = await health_checks_repo.list_definition_keys(session)
    missing = [spec for spec in DEFAULT_HEALTH_CHECKS if spec.key not in existing]
    if not missing:
        return 0
    session.add_all(_definition_from_spec(spec) for spec in missing)
    await session.commit()
    logger.info("health_checks_seeded count=%s", len(missing))
    return len(missing)


async def load_active_catalog(session: AsyncSession) -> list[HealthCheckDefinition]:
    return await health_checks_repo.list_active_definitions(session)
