from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.domain.models import HealthCheckDefinition, HealthCheckExecution, HealthCheckResult


async def list_definition_keys(session: AsyncSession) -> set[str]:
    result = await session.execute(select(HealthCheckDefinition.key))
    return set(result.scalars().all())


async def list_active_definitions(session: AsyncSession) -> list[HealthCheckDefinition]:
    result = await session.execute(
        select(HealthCheckDefinition)
        .where(HealthCheckDefinition.active.is_(True))
        .order_by(HealthCheckDefinition.display_order, HealthCheckDefinition.key)
    )
    return list(result.scalars().all())


async def create_execution(
    session: AsyncSession,
    *,
    cluster_id: str,
    requested_by: str,
    started_at: datetime,
) -> HealthCheckExecution:
    execution = HealthCheckExecution(
        id=uuid4().hex,
        cluster_id=cluster_id,
        requested_by=requested_by,
        status="running",
        started_at=started_at,
    )
    session.add(execution)
    await session.flush()
    return execution


async def get_execution(session: AsyncSession, execution_id: str) -> HealthCheckExecution | None:
    return await session.get(HealthCheckExecution, execution_id)


async def list_results(session: AsyncSession, execution_id: str) -> list[HealthCheckResult]:
    result = await session.execute(
        select(HealthCheckResult)
        .where(HealthCheckResult.execution_id == execution_id)
        .order_by(HealthCheckResult.id)
    )
    return list(result.scalars().all())


async def add_result(
    session: AsyncSession,
    *,
    execution_id: str,
    definition_id: str,
    check_key: str,
    check_title: str,
    instance_id: str | None,
    instance_label: str | None,
    database_name: str | None,
    status: str,
    rows: list[dict[str, Any]] | None,
    error: str | None,
    executed_at: datetime,
) -> HealthCheckResult:
    row = HealthCheckResult(
        execution_id=execution_id,
        definition_id=definition_id,
        check_key=check_key,
        check_title=check_title,
        instance_id=instance_id,
        instance_label=instance_label,
        database_name=database_name,
        status=status,
        rows_json=rows,
        row_count=len(rows or []),
        error=error,
        executed_at=executed_at,
    )
    session.add(row)
    await session.flush()
    return row


async def finish_execution(
    session: AsyncSession,
    execution_id: str,
    *,
    status: str,
    markdown: str,
    error: str | None,
    completed_at: datetime,
) -> None:
    execution = await get_execution(session, execution_id)
    if execution is None:
        return
    execution.status = status
    execution.markdown = markdown
    execution.error = error
    execution.completed_at = completed_at
    await session.flush()

