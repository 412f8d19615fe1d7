from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.core.config import get_settings
from clusterwatch.core.errors import (
    CatalogError,
    ExecutionNotFoundError,
    TargetConnectionError,
    TargetExecutionError,
)
from clusterwatch.domain.models import Cluster, HealthCheckDefinition, HealthCheckResult, Instance
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import clusters as clusters_repo
from clusterwatch.persistence.repos import health_checks as health_checks_repo
from clusterwatch.services.connections.provider import (
    ConnectionProvider,
    TargetDescriptor,
    get_connection_provider,
    target_for_instance,
)
from clusterwatch.services.health.catalog import DATABASE_SCOPES, INSTANCE_SCOPES, load_active_catalog
from clusterwatch.services.health.dispatch import HealthCheckJobPayload, dispatch_health_check
from clusterwatch.services.health.report import MarkdownReport, render_failure
from clusterwatch.services.telemetry import increment_counter, record_target_call


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across inline runs and worker processes.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthCheckResultView:
    id: int
    definition_id: str
    check_key: str
    check_title: str
    instance_id: str | None
    instance_label: str | None
    database_name: str | None
    status: str
    rows: list[dict[str, Any]]
    row_count: int
    error: str | None
    executed_at: datetime


@dataclass(frozen=True)
class HealthCheckExecutionView:
    id: str
    cluster_id: str
    requested_by: str
    status: str
    markdown: str | None
    error: str | None
    started_at: datetime
    completed_at: datetime | None
    results: list[HealthCheckResultView] = field(default_factory=list)


@dataclass(frozen=True)
class PlannedCheck:
    definition_id: str
    key: str
    title: str
    query: str
    database_scope: str
    warn_when: str
    instances: list[Instance]


def _result_view(row: HealthCheckResult) -> HealthCheckResultView:
    return HealthCheckResultView(
        id=row.id,
        definition_id=row.definition_id,
        check_key=row.check_key,
        check_title=row.check_title,
        instance_id=row.instance_id,
        instance_label=row.instance_label,
        database_name=row.database_name,
        status=row.status,
        rows=list(row.rows_json or []),
        row_count=row.row_count,
        error=row.error,
        executed_at=row.executed_at,
    )


def instance_label(instance: Instance) -> str:
    role = "writer" if instance.is_writer else "reader"
    return f"{instance.hostname}:{instance.port} ({role})"


def plan_checks(definitions: list[HealthCheckDefinition], instances: list[Instance]) -> list[PlannedCheck]:
    """Resolve every definition to its instances before anything runs.

    A definition that cannot be satisfied fails the whole run up front so a
    report never mixes executed checks with unplannable ones.
    """
    if not instances:
        raise CatalogError("cluster has no instances")
    if not definitions:
        raise CatalogError("no active health checks are defined")
    writer = next((instance for instance in instances if instance.is_writer), None)
    planned: list[PlannedCheck] = []
    for definition in definitions:
        if definition.instance_scope not in INSTANCE_SCOPES:
            raise CatalogError(f"health check {definition.key} has unknown instance scope {definition.instance_scope}")
        if definition.database_scope not in DATABASE_SCOPES:
            raise CatalogError(f"health check {definition.key} has unknown database scope {definition.database_scope}")
        if definition.instance_scope == "writer":
            if writer is None:
                raise CatalogError(
                    f"health check {definition.key} runs on the writer instance but the cluster has no writer"
                )
            targets = [writer]
        else:
            targets = list(instances)
        planned.append(
            PlannedCheck(
                definition_id=definition.id,
                key=definition.key,
                title=definition.title,
                query=definition.query,
                database_scope=definition.database_scope,
                warn_when=definition.warn_when,
                instances=targets,
            )
        )
    return planned


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, (TargetConnectionError, TargetExecutionError)):
        return str(exc)
    # DBAPI wrappers carry the statement text; the driver error alone is what operators need.
    orig = getattr(exc, "orig", None)
    return f"{type(exc).__name__}: {orig if orig is not None else exc}"


async def list_cluster_databases(
    provider: ConnectionProvider, cluster: Cluster, instance: Instance
) -> list[str]:
    async with provider.connect(target_for_instance(instance)) as handle:
        names = await provider.list_user_databases(handle)
    ignored = set(cluster.ignored_databases or [])
    databases = [name for name in names if name not in ignored]
    for extra in cluster.extra_databases or []:
        if extra not in databases:
            databases.append(extra)
    return databases


async def _run_query(provider: ConnectionProvider, target: TargetDescriptor, query: str) -> list[dict[str, Any]]:
    async with provider.connect(target) as handle:
        started = time.perf_counter()
        try:
            rows = await provider.fetch_rows(handle, query)
        except Exception as exc:
            record_target_call(
                target=target.label,
                operation="health_check",
                latency_ms=(time.perf_counter() - started) * 1000.0,
                success=False,
            )
            raise TargetExecutionError(target.label, _describe_error(exc)) from exc
        record_target_call(
            target=target.label,
            operation="health_check",
            latency_ms=(time.perf_counter() - started) * 1000.0,
            success=True,
        )
        return rows


async def _record(
    session: AsyncSession,
    report: MarkdownReport,
    *,
    execution_id: str,
    check: PlannedCheck,
    instance: Instance,
    database_name: str | None,
    status: str,
    rows: list[dict[str, Any]] | None,
    error: str | None,
) -> None:
    label = instance_label(instance)
    await health_checks_repo.add_result(
        session,
        execution_id=execution_id,
        definition_id=check.definition_id,
        check_key=check.key,
        check_title=check.title,
        instance_id=instance.id,
        instance_label=label,
        database_name=database_name,
        status=status,
        rows=rows,
        error=error,
        executed_at=_utc_now(),
    )
    # Commit per result so partial progress is visible while the run continues.
    await session.commit()
    heading = f"{label} / {database_name}" if database_name else label
    report.add_result(heading=heading, status=status, rows=rows, error=error)
    increment_counter(f"health_check_results_{status}_total")


async def _run_check(
    session: AsyncSession,
    report: MarkdownReport,
    provider: ConnectionProvider,
    *,
    execution_id: str,
    cluster: Cluster,
    check: PlannedCheck,
) -> None:
    report.begin_check(check.title)
    for instance in check.instances:
        if check.database_scope == "all_user_databases":
            try:
                databases = await list_cluster_databases(provider, cluster, instance)
            except Exception as exc:  # noqa: BLE001 - one unreachable instance must not sink the run
                logger.warning(
                    "health_check_database_enumeration_failed check=%s instance=%s error=%s",
                    check.key,
                    instance.id,
                    exc,
                )
                await _record(
                    session,
                    report,
                    execution_id=execution_id,
                    check=check,
                    instance=instance,
                    database_name=None,
                    status="error",
                    rows=None,
                    error=_describe_error(exc),
                )
                continue
        else:
            databases = [instance.default_database_name]

        for database_name in databases:
            target = target_for_instance(instance, database_name)
            try:
                rows = await _run_query(provider, target, check.query)
            except Exception as exc:  # noqa: BLE001 - failures are recorded per target
                logger.warning("health_check_target_failed check=%s target=%s error=%s", check.key, target.label, exc)
                await _record(
                    session,
                    report,
                    execution_id=execution_id,
                    check=check,
                    instance=instance,
                    database_name=database_name,
                    status="error",
                    rows=None,
                    error=_describe_error(exc),
                )
                continue
            status = "warning" if rows and check.warn_when == "rows" else "success"
            await _record(
                session,
                report,
                execution_id=execution_id,
                check=check,
                instance=instance,
                database_name=database_name,
                status=status,
                rows=rows,
                error=None,
            )


async def _fail(session: AsyncSession, execution_id: str, *, cluster_label: str, started_at: datetime, message: str) -> None:
    await health_checks_repo.finish_execution(
        session,
        execution_id,
        status="failed",
        markdown=render_failure(cluster_label=cluster_label, started_at=started_at, message=message),
        error=message,
        completed_at=_utc_now(),
    )
    await session.commit()
    increment_counter("health_check_runs_failed_total")


async def execute_health_check(execution_id: str) -> None:
    """Run a created execution to a terminal status.

    Per-target failures become ``error`` results and the run still completes;
    only planning failures or unexpected errors mark the whole run failed.
    """
    settings = get_settings()
    provider = get_connection_provider()
    async with SessionLocal() as session:
        execution = await health_checks_repo.get_execution(session, execution_id)
        if execution is None:
            logger.warning("health_check_execution_missing execution_id=%s", execution_id)
            return
        cluster_id = execution.cluster_id
        started_at = execution.started_at

        cluster_label = cluster_id
        try:
            cluster = await clusters_repo.get_cluster(session, cluster_id)
            if cluster is None:
                raise CatalogError(f"cluster {cluster_id} not found")
            cluster_label = cluster.name
            instances = await clusters_repo.list_instances(session, cluster_id)
            plan = plan_checks(await load_active_catalog(session), instances)
        except CatalogError as exc:
            logger.warning("health_check_plan_failed execution_id=%s cluster_id=%s error=%s", execution_id, cluster_id, exc)
            await _fail(session, execution_id, cluster_label=cluster_label, started_at=started_at, message=str(exc))
            return
        except Exception as exc:  # noqa: BLE001 - an unloadable catalog still ends the run as failed
            logger.exception("health_check_load_failed execution_id=%s cluster_id=%s", execution_id, cluster_id)
            await session.rollback()
            await _fail(
                session,
                execution_id,
                cluster_label=cluster_label,
                started_at=started_at,
                message=f"health check catalog could not be loaded ({_describe_error(exc)})",
            )
            return

        cluster_name = cluster_label
        report = MarkdownReport(
            cluster_name=cluster_name,
            started_at=started_at,
            max_rows=settings.healthcheck_max_rows_in_report,
        )
        logger.info(
            "health_check_run_started execution_id=%s cluster_id=%s checks=%s",
            execution_id,
            cluster_id,
            len(plan),
        )
        try:
            for check in plan:
                await _run_check(
                    session,
                    report,
                    provider,
                    execution_id=execution_id,
                    cluster=cluster,
                    check=check,
                )
            completed_at = _utc_now()
            await health_checks_repo.finish_execution(
                session,
                execution_id,
                status="completed",
                markdown=report.render(completed_at=completed_at),
                error=None,
                completed_at=completed_at,
            )
            await session.commit()
            increment_counter("health_check_runs_completed_total")
            logger.info("health_check_run_completed execution_id=%s", execution_id)
        except asyncio.CancelledError:
            await session.rollback()
            await _fail(session, execution_id, cluster_label=cluster_name, started_at=started_at, message="health check run was cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - surface a concise failure reason on the execution
            logger.exception("health_check_run_failed execution_id=%s", execution_id)
            await session.rollback()
            await _fail(
                session,
                execution_id,
                cluster_label=cluster_name,
                started_at=started_at,
                message=f"health check run failed unexpectedly ({_describe_error(exc)})",
            )


async def run_health_check(cluster_id: str, *, requested_by: str) -> HealthCheckExecutionView:
    async with SessionLocal() as session:
        execution = await health_checks_repo.create_execution(
            session,
            cluster_id=cluster_id,
            requested_by=requested_by,
            started_at=_utc_now(),
        )
        await session.commit()
        view = HealthCheckExecutionView(
            id=execution.id,
            cluster_id=execution.cluster_id,
            requested_by=execution.requested_by,
            status=execution.status,
            markdown=execution.markdown,
            error=execution.error,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
        )
    await dispatch_health_check(
        HealthCheckJobPayload(execution_id=view.id, cluster_id=cluster_id, requested_by=requested_by),
        execute_health_check,
    )
    logger.info("health_check_run_requested execution_id=%s cluster_id=%s requested_by=%s", view.id, cluster_id, requested_by)
    return view


async def get_execution(execution_id: str) -> HealthCheckExecutionView:
    async with SessionLocal() as session:
        execution = await health_checks_repo.get_execution(session, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"health check execution {execution_id} not found")
        results = await health_checks_repo.list_results(session, execution_id)
        return HealthCheckExecutionView(
            id=execution.id,
            cluster_id=execution.cluster_id,
            requested_by=execution.requested_by,
            status=execution.status,
            markdown=execution.markdown,
            error=execution.error,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            results=[_result_view(row) for row in results],
        )
