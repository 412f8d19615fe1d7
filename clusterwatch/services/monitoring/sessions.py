from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
import logging

from clusterwatch.core.config import get_settings
from clusterwatch.core.errors import (
    DatabaseNotFoundError,
    ExtensionUnavailableError,
    InvalidMonitoringConfigError,
    MonitoringConflictError,
    MonitoringSessionNotFoundError,
)
from clusterwatch.domain.models import MonitoringSessionRecord
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import clusters as clusters_repo
from clusterwatch.persistence.repos import monitoring as monitoring_repo
from clusterwatch.services.connections.provider import get_connection_provider, target_for_database
from clusterwatch.services.monitoring.sampler import collect_statement_stats, record_statement_stats
from clusterwatch.services.monitoring.scheduler import RepeatingTask, TaskRegistry
from clusterwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_registry = TaskRegistry()


def get_task_registry() -> TaskRegistry:
    return _registry


def _utc_now() -> datetime:
    # Use UTC timestamps for consistent session bookkeeping across processes.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MonitoringSessionStatus:
    session_id: str
    database_id: str
    active: bool
    status: str
    interval_seconds: int
    started_at: datetime
    stopped_at: datetime | None
    last_run_at: datetime | None
    scheduled_end_time: datetime | None
    last_cycle_status: str | None
    last_error: str | None
    # Whether this process currently owns a live sampling loop for the database.
    running: bool


def _status_from_record(record: MonitoringSessionRecord) -> MonitoringSessionStatus:
    return MonitoringSessionStatus(
        session_id=record.id,
        database_id=record.database_id,
        active=record.active,
        status=record.status,
        interval_seconds=record.interval_seconds,
        started_at=record.started_at,
        stopped_at=record.stopped_at,
        last_run_at=record.last_run_at,
        scheduled_end_time=record.scheduled_end_time,
        last_cycle_status=record.last_cycle_status,
        last_error=record.last_error,
        running=get_task_registry().is_live(record.database_id),
    )


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


async def _finish_session(database_id: str, *, status: str, error: str | None = None) -> None:
    async with SessionLocal() as session:
        record = await monitoring_repo.get_by_database(session, database_id)
        if record is None or not record.active:
            return
        await monitoring_repo.deactivate(session, record, status=status, stopped_at=_utc_now(), error=error)
        await session.commit()


async def run_monitoring_cycle(database_id: str) -> bool:
    """Run one sampling cycle for a database; return True to schedule another.

    The session record is re-read first so a stop or an elapsed end time ends
    the loop before any connection is opened. Sampling failures are recorded
    on the record and never end the loop.
    """
    async with SessionLocal() as session:
        record = await monitoring_repo.get_by_database(session, database_id)
        if record is None or not record.active:
            logger.info("monitoring_loop_exit database_id=%s reason=inactive", database_id)
            return False
        end_time = record.scheduled_end_time
        found = await clusters_repo.get_database_with_instance(session, database_id)

    if end_time is not None and end_time <= _utc_now():
        await _finish_session(database_id, status="completed")
        logger.info("monitoring_session_completed database_id=%s end_time=%s", database_id, end_time.isoformat())
        return False
    if found is None:
        await _finish_session(database_id, status="failed", error="monitored database no longer exists")
        logger.warning("monitoring_loop_exit database_id=%s reason=database_missing", database_id)
        return False

    database, instance = found
    target = target_for_database(database, instance)
    provider = get_connection_provider()
    settings = get_settings()
    increment_counter("monitoring_cycles_total")
    cycle_status = "ok"
    error: str | None = None
    try:
        # The target connection is released before any bookkeeping writes.
        async with provider.connect(target) as handle:
            stats = await collect_statement_stats(provider, handle, limit=settings.monitoring_sample_limit)
        async with SessionLocal() as session:
            await record_statement_stats(
                session,
                database_id=database_id,
                stats=stats,
                observed_at=_utc_now(),
            )
            await session.commit()
    except ExtensionUnavailableError as exc:
        cycle_status = "extension_unavailable"
        error = str(exc)
        increment_counter("monitoring_extension_unavailable_total")
        logger.warning("monitoring_extension_unavailable database_id=%s target=%s", database_id, target.label)
    except Exception as exc:  # noqa: BLE001 - a failed cycle self-heals on the next interval
        cycle_status = "error"
        error = _error_text(exc)
        increment_counter("monitoring_cycle_errors_total")
        logger.exception("monitoring_cycle_failed database_id=%s target=%s", database_id, target.label)

    async with SessionLocal() as session:
        await monitoring_repo.record_cycle(
            session,
            database_id,
            last_run_at=_utc_now(),
            cycle_status=cycle_status,
            error=error,
        )
        await session.commit()
    return True


def _launch(database_id: str, interval_seconds: int) -> RepeatingTask:
    registry = get_task_registry()
    task = RepeatingTask(
        database_id,
        partial(run_monitoring_cycle, database_id),
        interval_s=float(interval_seconds),
        on_finished=registry.unregister,
    )
    registry.register(task)
    return task


async def start_monitoring(
    database_id: str,
    *,
    requested_by: str,
    interval_seconds: int | None = None,
    scheduled_end_time: datetime | None = None,
) -> MonitoringSessionStatus:
    settings = get_settings()
    interval = settings.monitoring_default_interval_s if interval_seconds is None else int(interval_seconds)
    if interval < settings.monitoring_min_interval_s:
        raise InvalidMonitoringConfigError(
            f"interval_seconds must be at least {settings.monitoring_min_interval_s}"
        )
    if scheduled_end_time is not None and scheduled_end_time.tzinfo is None:
        raise InvalidMonitoringConfigError("scheduled_end_time must be timezone-aware")

    # Register before any await so two concurrent starts cannot both pass the check.
    task = _launch(database_id, interval)
    try:
        async with SessionLocal() as session:
            if await clusters_repo.get_database_with_instance(session, database_id) is None:
                raise DatabaseNotFoundError(f"database {database_id} not found")
            record = await monitoring_repo.activate(
                session,
                database_id=database_id,
                requested_by=requested_by,
                interval_seconds=interval,
                scheduled_end_time=scheduled_end_time,
                started_at=_utc_now(),
            )
            await session.commit()
    except BaseException:
        task.stop()
        raise

    task.start()
    increment_counter("monitoring_sessions_started_total")
    logger.info(
        "monitoring_session_started session_id=%s database_id=%s interval_s=%s end_time=%s requested_by=%s",
        record.id,
        database_id,
        interval,
        scheduled_end_time.isoformat() if scheduled_end_time else None,
        requested_by,
    )
    return _status_from_record(record)


async def stop_monitoring(session_id: str) -> MonitoringSessionStatus:
    async with SessionLocal() as session:
        record = await monitoring_repo.get_session_record(session, session_id)
        if record is None:
            raise MonitoringSessionNotFoundError(f"monitoring session {session_id} not found")
        if record.active:
            await monitoring_repo.deactivate(session, record, status="stopped", stopped_at=_utc_now())
            await session.commit()
    # Cancels the pending timer; an in-flight cycle finishes without rescheduling.
    get_task_registry().stop(record.database_id)
    logger.info("monitoring_session_stopped session_id=%s database_id=%s", session_id, record.database_id)
    return _status_from_record(record)


async def get_session_status(session_id: str) -> MonitoringSessionStatus:
    async with SessionLocal() as session:
        record = await monitoring_repo.get_session_record(session, session_id)
        if record is None:
            raise MonitoringSessionNotFoundError(f"monitoring session {session_id} not found")
        return _status_from_record(record)


async def resume_active_sessions() -> list[str]:
    # Worker start-up: pick up loops for records still marked active by a previous process.
    async with SessionLocal() as session:
        records = await monitoring_repo.list_active(session)
    resumed: list[str] = []
    for record in records:
        try:
            task = _launch(record.database_id, record.interval_seconds)
        except MonitoringConflictError:
            continue
        task.start()
        resumed.append(record.id)
    if resumed:
        logger.info("monitoring_sessions_resumed count=%s", len(resumed))
    return resumed


async def stop_all_tasks(timeout_s: float | None = 10.0) -> None:
    tasks = get_task_registry().stop_all()
    if not tasks:
        return
    try:
        await asyncio.wait_for(asyncio.gather(*(task.join() for task in tasks)), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("monitoring_tasks_stop_timeout pending=%s", sum(1 for task in tasks if task.alive))
