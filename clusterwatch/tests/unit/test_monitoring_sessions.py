from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from clusterwatch.core.errors import (
    DatabaseNotFoundError,
    InvalidMonitoringConfigError,
    MonitoringConflictError,
    MonitoringSessionNotFoundError,
)
from clusterwatch.domain.models import CanonicalStatement, StatementSample
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.services import telemetry
from clusterwatch.services.monitoring import scheduler as scheduler_module
from clusterwatch.services.monitoring import sessions as sessions_module
from clusterwatch.services.monitoring import (
    get_session_status,
    resume_active_sessions,
    start_monitoring,
    stop_monitoring,
)
from clusterwatch.services.monitoring.sampler import EXTENSION_CHECK_SQL
from clusterwatch.tests.utils.fakes import FakeProvider, FakeScheduler, stat_row, stats_handler
from clusterwatch.tests.utils.seed import create_monitored_database


@pytest.fixture
def fake_scheduler(monkeypatch) -> FakeScheduler:
    scheduler = FakeScheduler()
    monkeypatch.setattr(scheduler_module, "get_scheduler", lambda: scheduler)
    return scheduler


def _use_provider(monkeypatch, provider: FakeProvider) -> FakeProvider:
    monkeypatch.setattr(sessions_module, "get_connection_provider", lambda: provider)
    return provider


async def _fire_cycle(scheduler: FakeScheduler, database_id: str) -> None:
    scheduler.fire_next()
    task = sessions_module.get_task_registry().get(database_id)
    assert task is not None
    await task.wait_for_cycle()


async def _count(model) -> int:  # noqa: ANN001
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model)) or 0)


@pytest.mark.asyncio
async def test_cycle_samples_statements_and_reschedules(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    provider = _use_provider(
        monkeypatch,
        FakeProvider(
            handler=stats_handler(
                [
                    stat_row("SELECT * FROM orders WHERE id = 1", calls=5, total_time=50.0),
                    stat_row("SELECT * FROM orders WHERE id = 2", calls=3, total_time=9.0),
                    stat_row("UPDATE orders SET paid = true WHERE id = $1", calls=2, total_time=4.0),
                ]
            )
        ),
    )
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)
    assert status.active is True
    assert status.status == "running"
    assert [timer.delay for timer in fake_scheduler.pending()] == [0.0]

    await _fire_cycle(fake_scheduler, database_id)

    assert await _count(CanonicalStatement) == 2
    assert await _count(StatementSample) == 3
    # The connection was released before the cycle finished.
    assert provider.opened == provider.released == ["db-a.internal:5432/app"]
    assert [timer.delay for timer in fake_scheduler.pending()] == [30.0]

    current = await get_session_status(status.session_id)
    assert current.last_cycle_status == "ok"
    assert current.last_run_at is not None
    assert current.running is True
    assert telemetry.counters_snapshot()["monitoring_statements_new_total"] == 2


@pytest.mark.asyncio
async def test_past_end_time_never_samples(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    provider = _use_provider(monkeypatch, FakeProvider(handler=stats_handler([])))
    past = datetime.now(timezone.utc) - timedelta(minutes=5)

    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30, scheduled_end_time=past)
    await _fire_cycle(fake_scheduler, database_id)

    assert provider.opened == []
    assert fake_scheduler.pending() == []
    current = await get_session_status(status.session_id)
    assert current.active is False
    assert current.status == "completed"
    assert current.running is False


@pytest.mark.asyncio
async def test_stop_during_in_flight_cycle_finishes_without_rescheduling(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(target, sql):  # noqa: ANN001, ANN202
        if sql == EXTENSION_CHECK_SQL:
            return [{"installed": 1}]
        entered.set()
        await release.wait()
        return [stat_row("SELECT 1", calls=1, total_time=1.0)]

    _use_provider(monkeypatch, FakeProvider(handler=handler))
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)
    fake_scheduler.fire_next()
    await asyncio.wait_for(entered.wait(), timeout=5)

    stopped = await stop_monitoring(status.session_id)
    # Inactive immediately, even though the cycle is still running.
    assert stopped.active is False
    assert (await get_session_status(status.session_id)).active is False

    release.set()
    task = sessions_module.get_task_registry().get(database_id)
    assert task is not None
    await task.wait_for_cycle()
    await asyncio.wait_for(task.join(), timeout=5)

    assert fake_scheduler.pending() == []
    assert task.alive is False
    # Effects of the in-flight cycle are kept.
    assert await _count(CanonicalStatement) == 1
    final = await get_session_status(status.session_id)
    assert final.status == "stopped"
    assert final.last_cycle_status == "ok"
    assert final.running is False


@pytest.mark.asyncio
async def test_duplicate_start_for_same_database_is_rejected(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    _use_provider(monkeypatch, FakeProvider(handler=stats_handler([])))
    first = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    with pytest.raises(MonitoringConflictError):
        await start_monitoring(database_id, requested_by="someone-else", interval_seconds=30)
    assert len(fake_scheduler.pending()) == 1

    await stop_monitoring(first.session_id)
    restarted = await start_monitoring(database_id, requested_by="ops", interval_seconds=60)
    # The per-database record is reused across restarts.
    assert restarted.session_id == first.session_id
    assert restarted.active is True
    assert restarted.interval_seconds == 60


@pytest.mark.asyncio
async def test_missing_extension_is_recorded_and_loop_continues(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    provider = _use_provider(monkeypatch, FakeProvider(handler=stats_handler([], installed=False)))
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    await _fire_cycle(fake_scheduler, database_id)

    current = await get_session_status(status.session_id)
    assert current.active is True
    assert current.last_cycle_status == "extension_unavailable"
    assert "pg_stat_statements" in (current.last_error or "")
    assert len(fake_scheduler.pending()) == 1
    assert provider.released == provider.opened


@pytest.mark.asyncio
async def test_failed_cycle_self_heals_on_next_interval(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    calls = {"count": 0}

    def handler(target, sql):  # noqa: ANN001, ANN202
        if sql == EXTENSION_CHECK_SQL:
            return [{"installed": 1}]
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("canceling statement due to statement timeout")
        return [stat_row("SELECT 1", calls=1, total_time=1.0)]

    provider = _use_provider(monkeypatch, FakeProvider(handler=handler))
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    await _fire_cycle(fake_scheduler, database_id)
    failed = await get_session_status(status.session_id)
    assert failed.active is True
    assert failed.last_cycle_status == "error"
    assert "statement timeout" in (failed.last_error or "")
    assert provider.released == provider.opened

    await _fire_cycle(fake_scheduler, database_id)
    healed = await get_session_status(status.session_id)
    assert healed.last_cycle_status == "ok"
    assert healed.last_error is None
    assert await _count(CanonicalStatement) == 1


@pytest.mark.asyncio
async def test_unreachable_target_is_a_cycle_error(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    _use_provider(monkeypatch, FakeProvider(unreachable_hosts={"db-a.internal"}))
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    await _fire_cycle(fake_scheduler, database_id)

    current = await get_session_status(status.session_id)
    assert current.active is True
    assert current.last_cycle_status == "error"
    assert "TargetConnectionError" in (current.last_error or "")
    assert len(fake_scheduler.pending()) == 1


@pytest.mark.asyncio
async def test_caller_input_errors_are_raised_synchronously(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    _use_provider(monkeypatch, FakeProvider())

    with pytest.raises(DatabaseNotFoundError):
        await start_monitoring("missing", requested_by="ops", interval_seconds=30)
    assert sessions_module.get_task_registry().is_live("missing") is False

    with pytest.raises(InvalidMonitoringConfigError):
        await start_monitoring(database_id, requested_by="ops", interval_seconds=1)
    with pytest.raises(InvalidMonitoringConfigError):
        await start_monitoring(
            database_id,
            requested_by="ops",
            interval_seconds=30,
            scheduled_end_time=datetime(2030, 1, 1),
        )
    with pytest.raises(MonitoringSessionNotFoundError):
        await stop_monitoring("missing")
    with pytest.raises(MonitoringSessionNotFoundError):
        await get_session_status("missing")
    assert fake_scheduler.pending() == []


@pytest.mark.asyncio
async def test_resume_restarts_loops_for_active_records(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    _use_provider(monkeypatch, FakeProvider(handler=stats_handler([])))
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    # Simulate a process restart: the record stays active but no task is registered.
    sessions_module.get_task_registry().stop(database_id)
    assert sessions_module.get_task_registry().is_live(database_id) is False

    resumed = await resume_active_sessions()
    assert resumed == [status.session_id]
    assert sessions_module.get_task_registry().is_live(database_id) is True
    # A second resume in the same process does not spawn a duplicate loop.
    assert await resume_active_sessions() == []


@pytest.mark.asyncio
async def test_release_failure_keeps_the_collected_sample(monkeypatch, fake_scheduler) -> None:
    database_id = await create_monitored_database()
    _use_provider(
        monkeypatch,
        FakeProvider(
            handler=stats_handler([stat_row("SELECT * FROM orders WHERE id = 1", calls=5, total_time=50.0)]),
            release_error=OSError("ssh channel already closed"),
        ),
    )
    status = await start_monitoring(database_id, requested_by="ops", interval_seconds=30)

    await _fire_cycle(fake_scheduler, database_id)

    assert await _count(StatementSample) == 1
    assert (await get_session_status(status.session_id)).last_cycle_status == "ok"
