from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.core.errors import MonitoringSessionNotFoundError
from clusterwatch.domain.models import MonitoringSessionRecord
from clusterwatch.persistence.db import dialect_insert


async def get_session_record(session: AsyncSession, session_id: str) -> MonitoringSessionRecord | None:
    return await session.get(MonitoringSessionRecord, session_id)


async def get_by_database(session: AsyncSession, database_id: str) -> MonitoringSessionRecord | None:
    result = await session.execute(
        select(MonitoringSessionRecord).where(MonitoringSessionRecord.database_id == database_id)
    )
    return result.scalar_one_or_none()


async def list_active(session: AsyncSession) -> list[MonitoringSessionRecord]:
    result = await session.execute(
        select(MonitoringSessionRecord)
        .where(MonitoringSessionRecord.active.is_(True))
        .order_by(MonitoringSessionRecord.started_at, MonitoringSessionRecord.id)
    )
    return list(result.scalars().all())


async def activate(
    session: AsyncSession,
    *,
    database_id: str,
    requested_by: str,
    interval_seconds: int,
    scheduled_end_time: datetime | None,
    started_at: datetime,
) -> MonitoringSessionRecord:
    # Reuse the per-database record so session ids stay stable across stop/start.
    record = await get_by_database(session, database_id)
    if record is None:
        stmt = dialect_insert(session, MonitoringSessionRecord).values(
            id=uuid4().hex,
            database_id=database_id,
            requested_by=requested_by,
            active=True,
            status="running",
            interval_seconds=interval_seconds,
            scheduled_end_time=scheduled_end_time,
            started_at=started_at,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["database_id"])
        await session.execute(stmt)
        record = await get_by_database(session, database_id)
        if record is None:
            raise MonitoringSessionNotFoundError(f"monitoring session for {database_id} vanished after insert")

    record.requested_by = requested_by
    record.active = True
    record.status = "running"
    record.interval_seconds = interval_seconds
    record.scheduled_end_time = scheduled_end_time
    record.started_at = started_at
    record.stopped_at = None
    record.last_error = None
    await session.flush()
    return record


async def deactivate(
    session: AsyncSession,
    record: MonitoringSessionRecord,
    *,
    status: str,
    stopped_at: datetime,
    error: str | None = None,
) -> None:
    record.active = False
    record.status = status
    record.stopped_at = stopped_at
    if error is not None:
        record.last_error = error
    await session.flush()


async def record_cycle(
    session: AsyncSession,
    database_id: str,
    *,
    last_run_at: datetime,
    cycle_status: str,
    error: str | None,
) -> None:
    # Touch only cycle bookkeeping so a concurrent stop() keeps its active=false.
    await session.execute(
        update(MonitoringSessionRecord)
        .where(MonitoringSessionRecord.database_id == database_id)
        .values(last_run_at=last_run_at, last_cycle_status=cycle_status, last_error=error)
    )
